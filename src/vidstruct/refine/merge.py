"""细化结果合并：单线程把新帧并入帧表，只重算脏帧相邻字段，然后重新分组。"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, List, Sequence

from vidstruct.core import Frame, LoudnessGroup, Scene, Shot, get_logger
from vidstruct.core.config import PipelineConfig
from vidstruct.core.datamodels import Range
from vidstruct.segment import (
    annotate_adjacent_frames,
    build_frame_map,
    group_frames_to_shots,
    group_shots_to_scenes,
    tag_audio_metadata_to_frames,
    tag_audio_metadata_to_shots,
)

from .boundary import RefineState, validate_response

logger = get_logger(__name__)


@dataclass(slots=True)
class MergeResult:
    frames: List[Frame]
    added: int = 0
    api_calls_consumed: int = 0


@dataclass(slots=True)
class RegroupResult:
    shots: List[Shot] = field(default_factory=list)
    scenes: List[Scene] = field(default_factory=list)


def merge_boundary_frames(frames: Sequence[Frame], states: Iterable[RefineState]) -> MergeResult:
    """按边界序号依次写入帧表（以 frameNum 为键），与 worker 完成顺序无关。"""

    frame_map = build_frame_map(frames)
    added = 0
    api_calls = 0
    for state in sorted(states, key=lambda item: item.item_id):
        for boundary in sorted(state.boundaries, key=lambda item: item.index):
            response = boundary.response
            if response is None:
                continue
            # 状态文档可能来自上一次调用，写入前再校验一次
            validate_response(boundary, response)
            api_calls += response.api_calls_consumed
            for frame in response.new_frames:
                if frame.frame_num not in frame_map:
                    added += 1
                frame.dirty = True
                frame_map[frame.frame_num] = frame

    merged = sorted(frame_map.values(), key=lambda frame: frame.frame_num)
    annotate_adjacent_frames(merged, only_dirty=True)
    logger.info("Merged %d new frames (%d frames total, %d api calls)", added, len(merged), api_calls)
    return MergeResult(frames=merged, added=added, api_calls_consumed=api_calls)


def regroup(
    frames: Sequence[Frame],
    config: PipelineConfig,
    *,
    loudnesses: Sequence[LoudnessGroup] = (),
    pauses: Sequence[Range] = (),
) -> RegroupResult:
    """在扩充后的帧集合上重新执行镜头与场景分组。"""

    if loudnesses or pauses:
        tag_audio_metadata_to_frames(frames, loudnesses, pauses)
    shots = group_frames_to_shots(frames, config.shot)
    tag_audio_metadata_to_shots(shots, pauses)
    scenes = group_shots_to_scenes(shots, config.scene)
    return RegroupResult(shots=shots, scenes=scenes)
