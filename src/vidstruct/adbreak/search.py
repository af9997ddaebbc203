"""广告插入点搜索。

先从 SMPTE 标记（黑场、转场、标题）直接得到候选，再按固定间隔在节目时间轴上开对称窗口，
依次尝试已知类型、窗口内相似度、与前一场景 RMS 相似度、切点相邻帧相似度、最接近窗口中点，
同一场景只保留最先得到的候选。排名（权重降序、时间升序）与输出顺序（时间升序）相互独立。
"""

from __future__ import annotations

from bisect import bisect_right
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from vidstruct.core import AdBreakCandidate, Frame, KnownType, LoudnessGroup, Scene, SmpteMarker, StructuralType, get_logger
from vidstruct.core.config import AdBreakConfig
from vidstruct.core.datamodels import Range
from vidstruct.segment.audio import loudness_at, pause_at, pauses_in_range
from vidstruct.segment.similarity import intervals_intersect, similarity_matrix
from vidstruct.structure.scene_output import technical_cue_type
from vidstruct.structure.smpte import lookup_label

logger = get_logger(__name__)

SEED_LABELS = ("FFTC", "FFCL", "FFCB", "FPCI")
BLACKFRAME_REASON = "Blackframe scene"

_KNOWN_TYPE_CUES = {
    KnownType.BLACK_FRAMES: StructuralType.BLACK_FRAMES,
    KnownType.COLOR_BARS: StructuralType.COLOR_BARS,
}


class AdBreakSearch:
    """单次运行内的候选搜索；场景、帧表与音频数据在构造时固定。"""

    def __init__(
        self,
        scenes: Sequence[Scene],
        frame_map: Mapping[int, Frame],
        config: AdBreakConfig,
        *,
        pauses: Sequence[Range] = (),
        loudnesses: Sequence[LoudnessGroup] = (),
    ) -> None:
        self.scenes = list(scenes)
        self.frame_map = frame_map
        self.config = config
        self.pauses = list(pauses)
        self.loudnesses = list(loudnesses)
        self._scene_starts = [scene.frame_range[0] for scene in self.scenes]

    def run(self, markers: Sequence[SmpteMarker]) -> List[AdBreakCandidate]:
        if not self.scenes:
            logger.warning("No scenes, skip ad break search")
            return []
        for marker in markers:
            lookup_label(marker.label)

        program_markers, program_range = self._program_span(markers)
        logger.info("Programme span: %d -> %d ms", program_range[0], program_range[1])

        candidates: Dict[int, AdBreakCandidate] = {}
        for candidate in self._seed_from_markers(program_markers):
            candidates.setdefault(candidate.scene_id, candidate)

        interval = self.config.break_interval_ms
        offset = self.config.break_offset_ms
        break_at = program_range[0] + interval
        while break_at < program_range[1]:
            window = (max(0, break_at - offset), break_at + offset)
            for candidate in self._search_window(window):
                candidates.setdefault(candidate.scene_id, candidate)
            break_at += interval

        for candidate in candidates.values():
            self._tag_audio(candidate)
        return rank_candidates(list(candidates.values()))

    def _program_span(self, markers: Sequence[SmpteMarker]) -> Tuple[List[SmpteMarker], Range]:
        labels = [marker.label for marker in markers]
        if "FFOC" in labels and "LFOC" in labels:
            first = labels.index("FFOC")
            last = labels.index("LFOC")
            program_markers = list(markers[first : last + 1])
            return program_markers, (markers[first].timestamp_millis, markers[last].timestamp_millis)
        whole = (self.scenes[0].timestamp_range[0], self.scenes[-1].timestamp_range[1])
        return list(markers), whole

    def scene_for_frame(self, frame_num: int) -> Optional[Scene]:
        idx = bisect_right(self._scene_starts, frame_num) - 1
        if idx < 0:
            return None
        scene = self.scenes[idx]
        if scene.frame_range[0] <= frame_num <= scene.frame_range[1]:
            return scene
        return None

    def _seed_from_markers(self, markers: Sequence[SmpteMarker]) -> List[AdBreakCandidate]:
        seeds: List[AdBreakCandidate] = []
        for marker in markers:
            if marker.type == StructuralType.OPENING_CREDITS or marker.label not in SEED_LABELS:
                continue
            scene = self.scene_for_frame(marker.frame_num)
            if scene is None:
                logger.warning("Marker %s at frame %d has no scene", marker.label, marker.frame_num)
                continue
            if marker.label == "FFCB":
                seeds.append(self._make_candidate(scene, 1.0, BLACKFRAME_REASON, 0.0))
            else:
                seeds.append(self._make_candidate(scene, 0.8, "Transition or title scene", 0.0))
        return seeds

    def scenes_in_range(self, window: Range) -> List[Scene]:
        subset: List[Scene] = []
        for scene in self.scenes:
            smin, smax = scene.timestamp_range
            if smax < window[0]:
                continue
            if smin > window[1]:
                break
            if intervals_intersect((smin, smax), window):
                subset.append(scene)
        return subset

    def _search_window(self, window: Range) -> List[AdBreakCandidate]:
        in_range = self.scenes_in_range(window)
        if not in_range:
            logger.debug("No scene in window %s", window)
            return []

        found: Dict[int, AdBreakCandidate] = {}
        for scene in in_range:
            if scene.known_type is None:
                continue
            if scene.known_type == KnownType.BLACK_FRAMES:
                found[scene.scene_id] = self._make_candidate(scene, 1.0, BLACKFRAME_REASON, 0.0)
            else:
                found[scene.scene_id] = self._make_candidate(scene, 0.8, f"{scene.known_type.value} scene", 0.0)
        if found:
            return self._sorted(found)

        matches = self._gate_by_pause(in_range, window)
        if not matches:
            return []
        ceiling = self.config.max_similarity

        # 相似度基于窗口内全部场景计算，停顿过滤只决定谁可以被选中
        allowed = {scene.scene_id for scene in matches}
        sim_in_range = self.sim_in_range(in_range)
        scored = [
            (value, scene)
            for scene, value in zip(in_range, sim_in_range)
            if value is not None and scene.scene_id in allowed
        ]
        self._choose(found, scored, ceiling, 0.6, "Lowest sim score in range")

        scored = [(scene.sim_to_previous_scene[2], scene) for scene in matches if scene.sim_to_previous_scene]
        self._choose(found, scored, ceiling, 0.6, "Lowest sim score to previous scene (rms)")

        scored = [(scene.sim_to_previous_frame, scene) for scene in matches if scene.sim_to_previous_frame is not None]
        self._choose(found, scored, ceiling, 0.5, "Lowest sim score to previous frame")

        midpoint = (window[0] + window[1]) / 2
        closest = min(matches, key=lambda scene: (abs(scene.timestamp_range[0] - midpoint), scene.scene_id))
        sim = closest.sim_to_previous_frame
        if sim is not None and sim < ceiling and closest.scene_id not in found:
            found[closest.scene_id] = self._make_candidate(closest, 0.2, "Closest scene to break interval", sim)
        return self._sorted(found)

    def _gate_by_pause(self, scenes: Sequence[Scene], window: Range) -> List[Scene]:
        """有停顿数据时只保留起点落在对白停顿中的场景；没有停顿数据时不过滤。"""

        if not self.pauses:
            return list(scenes)
        scene_range = (scenes[0].timestamp_range[0], scenes[-1].timestamp_range[1])
        pauses = pauses_in_range(self.pauses, scene_range, self.config.audio_lookback_ms)
        kept: List[Scene] = []
        for scene in scenes:
            if scene.pause_in_dialogue:
                kept.append(scene)
            elif pause_at(pauses, scene.timestamp_range[0], self.config.pause_padding_ms) is not None:
                kept.append(scene)
        return kept

    def sim_in_range(self, scenes: Sequence[Scene]) -> List[Optional[float]]:
        """窗口内每个场景与其它场景的最高帧相似度均值（不含自身）。"""

        count = len(scenes)
        if count < 2:
            return [None] * count
        groups = [self._shot_endpoint_frames(scene) for scene in scenes]
        flat = [frame.embedding for group in groups for frame in group]
        if not flat:
            return [None] * count
        sims = similarity_matrix(flat, flat)
        bounds = np.cumsum([0] + [len(group) for group in groups])

        values: List[Optional[float]] = []
        for i in range(count):
            if not groups[i]:
                values.append(None)
                continue
            others = [
                float(sims[bounds[i] : bounds[i + 1], bounds[j] : bounds[j + 1]].max())
                for j in range(count)
                if j != i and groups[j]
            ]
            values.append(float(np.mean(others)) if others else None)
        return values

    def _shot_endpoint_frames(self, scene: Scene) -> List[Frame]:
        frames: List[Frame] = []
        for shot in scene.shots:
            for frame_num in shot.frame_range:
                frame = self.frame_map.get(frame_num)
                if frame is not None:
                    frames.append(frame)
        return frames

    def _choose(
        self,
        found: Dict[int, AdBreakCandidate],
        scored: Sequence[Tuple[float, Scene]],
        ceiling: float,
        weight: float,
        reason: str,
    ) -> None:
        if not scored:
            return
        value, scene = min(scored, key=lambda item: (item[0], item[1].scene_id))
        if value >= ceiling or scene.scene_id in found:
            return
        found[scene.scene_id] = self._make_candidate(scene, weight, reason, value)

    @staticmethod
    def _sorted(found: Mapping[int, AdBreakCandidate]) -> List[AdBreakCandidate]:
        return sorted(found.values(), key=lambda candidate: (candidate.timestamp, candidate.scene_id))

    def _make_candidate(self, scene: Scene, weight: float, reason: str, chosen_sim: float) -> AdBreakCandidate:
        first_frame = self.frame_map.get(scene.frame_range[0])
        cue_type = scene.segment_type or (_KNOWN_TYPE_CUES.get(scene.known_type) if scene.known_type else None)
        candidate = AdBreakCandidate(
            scene_id=scene.scene_id,
            timestamp_range=scene.timestamp_range,
            frame_range=scene.frame_range,
            shot_range=scene.shot_range,
            weight=weight,
            reason=reason,
            chosen_sim=float(chosen_sim),
            smpte_timecodes=scene.smpte_timecodes,
            known_type=scene.known_type,
            segment_type=scene.segment_type,
            technical_cue_type=technical_cue_type(cue_type),
            key=first_frame.name if first_frame else None,
        )
        logger.debug("Scene#%d candidate: %s [%.1f]", scene.scene_id, reason, weight)
        return candidate

    def _tag_audio(self, candidate: AdBreakCandidate) -> None:
        t = candidate.timestamp
        candidate.loudness = loudness_at(self.loudnesses, t)
        candidate.pause = pause_at(self.pauses, t, self.config.pause_padding_ms) if self.pauses else None


def rank_candidates(candidates: Sequence[AdBreakCandidate]) -> List[AdBreakCandidate]:
    """按权重降序、时间升序排名，再按时间升序输出。"""

    ranked = sorted(candidates, key=lambda c: (-c.weight, c.timestamp, c.scene_id))
    for idx, candidate in enumerate(ranked):
        candidate.ranking = idx
    ordered = sorted(candidates, key=lambda c: (c.timestamp, c.scene_id))
    for idx, candidate in enumerate(ordered):
        candidate.break_no = idx
    logger.info("Ad break candidates: %d", len(ordered))
    return ordered


def search_ad_breaks(
    scenes: Sequence[Scene],
    markers: Sequence[SmpteMarker],
    frame_map: Mapping[int, Frame],
    config: AdBreakConfig,
    *,
    pauses: Sequence[Range] = (),
    loudnesses: Sequence[LoudnessGroup] = (),
) -> List[AdBreakCandidate]:
    search = AdBreakSearch(scenes, frame_map, config, pauses=pauses, loudnesses=loudnesses)
    return search.run(markers)


def adbreak_document(frame_prefix: str, candidates: Sequence[AdBreakCandidate]) -> Dict[str, Any]:
    return {"framePrefix": frame_prefix, "adbreak": [candidate.to_dict() for candidate in candidates]}
