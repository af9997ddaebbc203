"""音频元数据：停顿区间与响度分组的查询，打标到帧/镜头，以及对白到场景的映射。"""

from __future__ import annotations

from bisect import bisect_right
from typing import Any, Iterable, List, Optional, Sequence

from vidstruct.core import DialogueGroup, Frame, LoudnessGroup, Scene, Shot, get_logger
from vidstruct.core.datamodels import Range
from vidstruct.core.errors import DocumentFormatError

from .similarity import intervals_intersect

logger = get_logger(__name__)


def load_pauses(payload: Iterable[Any]) -> List[Range]:
    """解析停顿区间数组 ``[[start, end], ...]``，并按起点排序。"""

    pauses: List[Range] = []
    for item in payload:
        if not isinstance(item, (list, tuple)) or len(item) != 2:
            raise DocumentFormatError(f"停顿区间格式错误: {item!r}")
        pauses.append((int(item[0]), int(item[1])))
    pauses.sort()
    return pauses


def load_loudnesses(payload: Iterable[Any]) -> List[LoudnessGroup]:
    groups = [LoudnessGroup.from_dict(item) for item in payload]
    groups.sort(key=lambda group: group.timestamp_range[0])
    return groups


def loudness_at(loudnesses: Sequence[LoudnessGroup], t: int) -> Optional[LoudnessGroup]:
    """返回覆盖时间点 t 的响度分组，未覆盖时返回 None。"""

    if not loudnesses:
        return None
    starts = [group.timestamp_range[0] for group in loudnesses]
    idx = bisect_right(starts, t) - 1
    # 分组可能首尾相接，向前多看一个
    for candidate in (idx, idx - 1):
        if 0 <= candidate < len(loudnesses):
            lmin, lmax = loudnesses[candidate].timestamp_range
            if lmin <= t <= lmax:
                return loudnesses[candidate]
    return None


def pause_at(pauses: Sequence[Range], t: int, padding: int = 0) -> Optional[Range]:
    for pause in pauses:
        pmin = max(0, pause[0] - padding)
        pmax = pause[1] + padding
        if pmin <= t <= pmax:
            return pause
        if pmin > t:
            break
    return None


def pauses_in_range(pauses: Sequence[Range], time_range: Range, lookback: int = 0) -> List[Range]:
    rmin = max(0, time_range[0] - lookback)
    rmax = time_range[1]
    subset: List[Range] = []
    for pause in pauses:
        if pause[0] > rmax:
            break
        if pause[1] < rmin:
            continue
        if intervals_intersect(pause, (rmin, rmax)):
            subset.append(pause)
    return subset


def loudness_in_range(loudnesses: Sequence[LoudnessGroup], time_range: Range, lookback: int = 0) -> List[LoudnessGroup]:
    rmin = max(0, time_range[0] - lookback)
    rmax = time_range[1]
    subset: List[LoudnessGroup] = []
    for group in loudnesses:
        lmin, lmax = group.timestamp_range
        if lmin > rmax:
            break
        if lmax < rmin:
            continue
        if intervals_intersect((lmin, lmax), (rmin, rmax)):
            subset.append(group)
    return subset


def tag_audio_metadata_to_frames(
    frames: Sequence[Frame],
    loudnesses: Sequence[LoudnessGroup],
    pauses: Sequence[Range],
) -> None:
    """按时间戳为每帧写入响度标签与是否处于对白停顿。"""

    if not loudnesses and not pauses:
        logger.warning("No audio metadata available, skip audio tagging")
        return
    for frame in frames:
        group = loudness_at(loudnesses, frame.timestamp_millis)
        if group is not None:
            frame.loudness_level = group.label
        if pauses:
            frame.pause_in_dialogue = pause_at(pauses, frame.timestamp_millis) is not None


def tag_audio_metadata_to_shots(shots: Sequence[Shot], pauses: Sequence[Range] = ()) -> None:
    """镜头继承首帧的音频标签；切点落在停顿内时记录停顿时长。"""

    for shot in shots:
        if not shot.frames:
            continue
        first = shot.frames[0]
        shot.loudness_level = first.loudness_level
        shot.pause_in_dialogue = first.pause_in_dialogue
        pause = pause_at(pauses, first.timestamp_millis) if pauses else None
        shot.pause_duration = (pause[1] - pause[0]) if pause else None



def load_dialogue_groups(payload: Iterable[Any]) -> List[DialogueGroup]:
    groups = [DialogueGroup.from_dict(item) for item in payload]
    groups.sort(key=lambda group: group.timestamp_range[0])
    return groups


def _overlap(a: Range, b: Range) -> int:
    return min(a[1], b[1]) - max(a[0], b[0])


def tag_dialogue_to_scenes(scenes: Sequence[Scene], groups: Sequence[DialogueGroup]) -> None:
    """把对白分组映射到相交的场景。

    相交场景都继承分组的 ``sequence_type``；每条转写只归入与其重叠最长的场景，
    重叠相同取较早的场景。重复调用会先清空上次的结果。
    """

    if not groups:
        return
    for scene in scenes:
        scene.transcripts = []
        scene.sequence_type = None

    for group in groups:
        amin, amax = group.timestamp_range
        related: List[Scene] = []
        for scene in scenes:
            vmin, vmax = scene.timestamp_range
            if vmax < amin:
                continue
            if vmin > amax:
                break
            if intervals_intersect((vmin, vmax), (amin, amax)):
                related.append(scene)
        if not related:
            logger.debug("Dialogue group %s matches no scene", group.timestamp_range)
            continue
        for scene in related:
            scene.sequence_type = group.sequence_type
        for transcript in group.transcripts:
            span = (transcript.start, transcript.end)
            best = max(related, key=lambda scene: (_overlap(scene.timestamp_range, span), -scene.scene_id))
            best.transcripts.append(transcript.text)
