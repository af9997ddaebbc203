"""镜头 -> 场景分组，并计算场景间相似度诊断信息。"""

from __future__ import annotations

from bisect import bisect_left, bisect_right
from typing import Dict, List, Sequence

import numpy as np

from vidstruct.core import Frame, Scene, Shot, get_logger
from vidstruct.core.config import SceneConfig
from vidstruct.core.datamodels import QUIET_LOUDNESS_TAGS
from vidstruct.core.errors import FrameNotFoundError

from .similarity import cosine_similarity, rms, similarity_matrix

logger = get_logger(__name__)


def group_shots_to_scenes(shots: Sequence[Shot], config: SceneConfig) -> List[Scene]:
    """与镜头分组相同的线性扫描，但使用镜头边界相似度和更宽松的阈值。"""

    if not shots:
        return []

    groups: List[List[Shot]] = [[shots[0]]]
    for shot in shots[1:]:
        prev = groups[-1][-1]
        if _keep_open(prev, shot, config):
            groups[-1].append(shot)
        else:
            groups.append([shot])

    scenes = [_make_scene(scene_id, group) for scene_id, group in enumerate(groups)]
    compute_scene_similarity(scenes)
    compute_sim_across_all_scenes(scenes)
    logger.info("Grouped %d shots into %d scenes", len(shots), len(scenes))
    return scenes


def boundary_similarity(prev: Shot, cur: Shot) -> float:
    """两个镜头首尾帧之间的最大余弦相似度。"""

    if not prev.frames or not cur.frames:
        raise FrameNotFoundError(f"镜头 #{prev.shot_id}/#{cur.shot_id} 缺少帧数据")
    prev_ends = [prev.frames[0].embedding, prev.frames[-1].embedding]
    cur_ends = [cur.frames[0].embedding, cur.frames[-1].embedding]
    return float(similarity_matrix(prev_ends, cur_ends).max())


def _keep_open(prev: Shot, cur: Shot, config: SceneConfig) -> bool:
    gap = cur.timestamp_range[0] - prev.timestamp_range[1]
    if gap > config.max_time_distance_ms:
        return False
    if boundary_similarity(prev, cur) >= config.min_frame_similarity:
        return True
    # 对白跨越切点持续进行时视为同一场景
    if config.merge_on_continuous_dialogue:
        return (
            prev.pause_in_dialogue is False
            and cur.pause_in_dialogue is False
            and cur.loudness_level is not None
            and cur.loudness_level not in QUIET_LOUDNESS_TAGS
        )
    return False


def _make_scene(scene_id: int, shots: List[Shot]) -> Scene:
    first, last = shots[0], shots[-1]
    # 多个已知类型冲突时取最早出现的
    known_type = next((shot.known_type for shot in shots if shot.known_type is not None), None)
    return Scene(
        scene_id=scene_id,
        shot_range=(first.shot_id, last.shot_id),
        frame_range=(first.frame_range[0], last.frame_range[1]),
        timestamp_range=(first.timestamp_range[0], last.timestamp_range[1]),
        smpte_timecodes=(first.smpte_timecodes[0], last.smpte_timecodes[1]),
        shots=list(shots),
        known_type=known_type,
        loudness_level=first.loudness_level,
        pause_in_dialogue=first.pause_in_dialogue,
        pause_duration=first.pause_duration,
    )


def compute_scene_similarity(scenes: Sequence[Scene]) -> None:
    """为每个场景计算与前一场景的 [min, max, rms] 帧相似度及切点相邻帧相似度。"""

    for idx in range(1, len(scenes)):
        pre = scenes[idx - 1]
        cur = scenes[idx]
        pre_frames = pre.frames
        cur_frames = cur.frames
        if not pre_frames or not cur_frames:
            raise FrameNotFoundError(f"场景 #{pre.scene_id}/#{cur.scene_id} 缺少帧数据")

        cur.sim_to_previous_frame = cosine_similarity(pre_frames[-1].embedding, cur_frames[0].embedding)
        sims = similarity_matrix([f.embedding for f in cur_frames], [f.embedding for f in pre_frames])
        flat = sims.ravel()
        cur.sim_to_previous_scene = (float(flat.min()), float(flat.max()), rms(flat.tolist()))


def compute_sim_across_all_scenes(scenes: Sequence[Scene]) -> None:
    """场景两两之间取首尾帧最大相似度，再对其它所有场景求均值。"""

    count = len(scenes)
    if count < 2:
        for scene in scenes:
            scene.sim_to_all_scenes = None
        return

    endpoints = []
    for scene in scenes:
        frames = scene.frames
        if not frames:
            raise FrameNotFoundError(f"场景 #{scene.scene_id} 缺少帧数据")
        endpoints.extend([frames[0].embedding, frames[-1].embedding])

    full = similarity_matrix(endpoints, endpoints).reshape(count, 2, count, 2)
    matrix = full.max(axis=(1, 3))
    totals = matrix.sum(axis=0) - np.diag(matrix)
    for idx, scene in enumerate(scenes):
        scene.sim_to_all_scenes = float(totals[idx] / (count - 1))


def attach_frames(scenes: Sequence[Scene], frames: Sequence[Frame]) -> None:
    """把帧明细挂回从文档加载的镜头（文档中的镜头不携带帧）。"""

    ordered = sorted(frames, key=lambda frame: frame.frame_num)
    numbers = [frame.frame_num for frame in ordered]
    for scene in scenes:
        for shot in scene.shots:
            lo = bisect_left(numbers, shot.frame_range[0])
            hi = bisect_right(numbers, shot.frame_range[1])
            shot.frames = ordered[lo:hi]
            if not shot.frames:
                raise FrameNotFoundError(f"镜头 #{shot.shot_id} 的帧 {shot.frame_range} 不在帧表中")


def build_frame_map(frames: Sequence[Frame]) -> Dict[int, Frame]:
    return {frame.frame_num: frame for frame in frames}
