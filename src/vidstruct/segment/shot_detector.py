"""镜头切分逻辑：结合相邻帧 embedding 相似度、感知哈希、时间间隔与已知类型。"""

from __future__ import annotations

from typing import List, Sequence, Tuple

from vidstruct.core import Frame, Shot, get_logger
from vidstruct.core.config import ShotConfig
from vidstruct.core.errors import FrameNumberingError

from .similarity import cosine_similarity, hash_distance

logger = get_logger(__name__)


def annotate_adjacent_frames(frames: Sequence[Frame], *, only_dirty: bool = False) -> None:
    """计算每帧与下一帧的 hash 距离和 embedding 相似度。

    ``only_dirty=True`` 时只重算新插入帧及其前一帧，避免全量 O(n) 以外的重复计算。
    """

    for idx in range(len(frames) - 1):
        cur = frames[idx]
        nex = frames[idx + 1]
        if cur.frame_num >= nex.frame_num:
            raise FrameNumberingError(f"帧顺序错误: {cur.frame_num} >= {nex.frame_num}")
        if only_dirty and not (cur.dirty or nex.dirty):
            continue
        cur.hash_distance = hash_distance(cur.hash, nex.hash) if cur.hash and nex.hash else None
        cur.embed_similarity = cosine_similarity(cur.embedding, nex.embedding)
    if frames and only_dirty:
        for frame in frames:
            frame.dirty = False


def detect_shot_boundaries(frames: Sequence[Frame], config: ShotConfig) -> List[Tuple[int, int]]:
    """返回 (start_idx, end_idx) 区间列表，end 为开区间。"""

    if not frames:
        return []

    boundaries = [0]
    for idx in range(1, len(frames)):
        if _is_shot_boundary(frames[idx - 1], frames[idx], config):
            boundaries.append(idx)
    boundaries.append(len(frames))
    return [(boundaries[i], boundaries[i + 1]) for i in range(len(boundaries) - 1)]


def group_frames_to_shots(frames: Sequence[Frame], config: ShotConfig) -> List[Shot]:
    """单次线性扫描，将有序帧分组为镜头，shot_id 从 0 连续编号。"""

    for prev, cur in zip(frames, frames[1:]):
        if prev.frame_num >= cur.frame_num:
            raise FrameNumberingError(f"帧顺序错误: {prev.frame_num} >= {cur.frame_num}")

    shots: List[Shot] = []
    for start_idx, end_idx in detect_shot_boundaries(frames, config):
        subset = list(frames[start_idx:end_idx])
        shots.append(Shot.from_frames(len(shots), subset, known_type=subset[0].known_type))
    logger.info("Grouped %d frames into %d shots", len(frames), len(shots))
    return shots


def _is_shot_boundary(prev: Frame, cur: Frame, config: ShotConfig) -> bool:
    # 已知类型（黑场/单色帧）变化一定切开
    if prev.known_type != cur.known_type:
        return True
    if cur.timestamp_millis - prev.timestamp_millis > config.max_time_distance_ms:
        return True
    if prev.hash_distance is not None and prev.hash_distance > config.max_hash_distance:
        return True
    similarity = prev.embed_similarity
    if similarity is None:
        similarity = cosine_similarity(prev.embedding, cur.embedding)
    return similarity < config.min_frame_similarity
