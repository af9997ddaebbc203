"""帧 -> 镜头 -> 场景分组，以及相似度与音频标签工具。"""

from .audio import (
    load_dialogue_groups,
    load_loudnesses,
    load_pauses,
    tag_audio_metadata_to_frames,
    tag_audio_metadata_to_shots,
    tag_dialogue_to_scenes,
)
from .scene_grouper import attach_frames, build_frame_map, group_shots_to_scenes
from .shot_detector import annotate_adjacent_frames, detect_shot_boundaries, group_frames_to_shots
from .similarity import cosine_similarity, hash_distance, intervals_intersect

__all__ = [
    "annotate_adjacent_frames",
    "attach_frames",
    "build_frame_map",
    "cosine_similarity",
    "detect_shot_boundaries",
    "group_frames_to_shots",
    "group_shots_to_scenes",
    "hash_distance",
    "intervals_intersect",
    "load_dialogue_groups",
    "load_loudnesses",
    "load_pauses",
    "tag_audio_metadata_to_frames",
    "tag_audio_metadata_to_shots",
    "tag_dialogue_to_scenes",
]
