"""细化结果合并与重新分组测试。"""

import numpy as np
import pytest

from vidstruct.core import Frame, PipelineConfig
from vidstruct.core.errors import FrameNumberingError
from vidstruct.refine import Boundary, ExtractionResult, RefineState, merge_boundary_frames, regroup


def make_frame(frame_num: int, embedding=(1.0, 0.0)) -> Frame:
    return Frame(
        frame_num=frame_num,
        timestamp_millis=frame_num * 100,
        smpte_timecode="",
        embedding=np.array(embedding, dtype=np.float32),
    )


def make_boundary(index: int, start: int, end: int, new_frames) -> Boundary:
    return Boundary(
        index=index,
        from_id=index,
        to_id=index + 1,
        from_frame=make_frame(start),
        to_frame=make_frame(end),
        response=ExtractionResult(new_frames=list(new_frames), api_calls_consumed=len(new_frames)),
    )


def test_merge_inserts_frames_and_patches_neighbours() -> None:
    frames = [make_frame(0), make_frame(10, (0.0, 1.0)), make_frame(20, (0.0, 1.0))]
    for frame in frames:
        frame.embed_similarity = -1.0
    state = RefineState(
        item_id=0,
        boundaries=[make_boundary(0, 0, 10, [make_frame(4), make_frame(6, (0.0, 1.0))])],
    )

    merged = merge_boundary_frames(frames, [state])

    assert [frame.frame_num for frame in merged.frames] == [0, 4, 6, 10, 20]
    assert merged.added == 2
    assert merged.api_calls_consumed == 2
    by_num = {frame.frame_num: frame for frame in merged.frames}
    assert by_num[0].embed_similarity == pytest.approx(1.0)
    assert by_num[4].embed_similarity == pytest.approx(0.0)
    assert by_num[6].embed_similarity == pytest.approx(1.0)
    # 与新帧不相邻的帧保持原值
    assert by_num[10].embed_similarity == -1.0
    assert not any(frame.dirty for frame in merged.frames)


def test_merge_is_order_independent() -> None:
    frames = [make_frame(0), make_frame(10), make_frame(20)]
    first = RefineState(item_id=0, boundaries=[make_boundary(0, 0, 10, [make_frame(5)])])
    second = RefineState(item_id=1, boundaries=[make_boundary(0, 10, 20, [make_frame(15)])])

    forward = merge_boundary_frames(frames, [first, second])
    backward = merge_boundary_frames(frames, [second, first])

    assert [f.frame_num for f in forward.frames] == [f.frame_num for f in backward.frames] == [0, 5, 10, 15, 20]


def test_merge_skips_unresolved_boundaries() -> None:
    boundary = make_boundary(0, 0, 10, [])
    boundary.response = None
    state = RefineState(item_id=0, boundaries=[boundary])

    merged = merge_boundary_frames([make_frame(0), make_frame(10)], [state])

    assert merged.added == 0
    assert len(merged.frames) == 2


def test_merge_revalidates_stored_responses() -> None:
    state = RefineState(item_id=0, boundaries=[make_boundary(0, 0, 10, [make_frame(30)])])

    with pytest.raises(FrameNumberingError):
        merge_boundary_frames([make_frame(0), make_frame(10)], [state])


def test_regroup_on_merged_frames() -> None:
    frames = [make_frame(0), make_frame(10, (0.0, 1.0))]
    state = RefineState(
        item_id=0,
        boundaries=[make_boundary(0, 0, 10, [make_frame(3), make_frame(7, (0.0, 1.0))])],
    )
    merged = merge_boundary_frames(frames, [state])

    result = regroup(merged.frames, PipelineConfig())

    assert [shot.frame_range for shot in result.shots] == [(0, 3), (7, 10)]
    assert [scene.frame_range for scene in result.scenes] == [(0, 3), (7, 10)]
