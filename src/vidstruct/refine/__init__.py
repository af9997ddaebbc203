"""边界细化：并行补帧、可恢复状态与合并重分组。"""

from .boundary import (
    Boundary,
    BoundaryRefiner,
    ExtractionResult,
    FrameExtractor,
    FramePoolExtractor,
    RefineState,
    RefineStatus,
    collect_boundaries,
    deadline_from_remaining,
    load_state,
    save_state,
    validate_response,
)
from .merge import MergeResult, RegroupResult, merge_boundary_frames, regroup

__all__ = [
    "Boundary",
    "BoundaryRefiner",
    "ExtractionResult",
    "FrameExtractor",
    "FramePoolExtractor",
    "MergeResult",
    "RefineState",
    "RefineStatus",
    "RegroupResult",
    "collect_boundaries",
    "deadline_from_remaining",
    "load_state",
    "merge_boundary_frames",
    "regroup",
    "save_state",
    "validate_response",
]
