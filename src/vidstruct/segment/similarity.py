"""相似度基础函数：余弦相似度、感知哈希距离与时间区间求交。"""

from __future__ import annotations

from typing import Sequence, Tuple

import imagehash
import numpy as np
from numpy.typing import NDArray
from sklearn.metrics.pairwise import cosine_similarity as _pairwise_cosine

from vidstruct.core.errors import DimensionMismatchError


def cosine_similarity(a: Sequence[float] | NDArray[np.float32], b: Sequence[float] | NDArray[np.float32]) -> float:
    """两个等长向量的余弦相似度；任一为零向量时返回 0。"""

    vec_a = np.asarray(a, dtype=np.float32)
    vec_b = np.asarray(b, dtype=np.float32)
    if vec_a.shape != vec_b.shape:
        raise DimensionMismatchError(f"embedding 维度不一致: {vec_a.shape} vs {vec_b.shape}")
    a_norm = np.linalg.norm(vec_a)
    b_norm = np.linalg.norm(vec_b)
    if a_norm == 0 or b_norm == 0:
        return 0.0
    return float(np.dot(vec_a, vec_b) / (a_norm * b_norm))


def hash_distance(a: str, b: str) -> float:
    """十六进制感知哈希的归一化汉明距离，范围 [0, 1]。"""

    if len(a) != len(b):
        raise DimensionMismatchError(f"感知哈希长度不一致: {len(a)} vs {len(b)}")
    hash_a = imagehash.hex_to_hash(a)
    hash_b = imagehash.hex_to_hash(b)
    return float(hash_a - hash_b) / float(hash_a.hash.size)


def intervals_intersect(a: Tuple[int, int], b: Tuple[int, int], inclusive: bool = True) -> bool:
    """判断两个闭区间是否相交；``inclusive=False`` 时端点相接不算相交。"""

    if inclusive:
        return a[0] <= b[1] and b[0] <= a[1]
    return a[0] < b[1] and b[0] < a[1]


def similarity_matrix(
    rows_a: Sequence[NDArray[np.float32]],
    rows_b: Sequence[NDArray[np.float32]],
) -> NDArray[np.float32]:
    """批量余弦相似度矩阵，形状 (len(rows_a), len(rows_b))。"""

    if not rows_a or not rows_b:
        return np.zeros((len(rows_a), len(rows_b)), dtype=np.float32)
    arrays_a = [np.asarray(row, dtype=np.float32).ravel() for row in rows_a]
    arrays_b = [np.asarray(row, dtype=np.float32).ravel() for row in rows_b]
    dims = {arr.shape[0] for arr in arrays_a} | {arr.shape[0] for arr in arrays_b}
    if len(dims) != 1:
        raise DimensionMismatchError(f"embedding 维度不一致: {sorted(dims)}")
    mat_a = np.vstack(arrays_a)
    mat_b = np.vstack(arrays_b)
    return _pairwise_cosine(mat_a, mat_b).astype(np.float32)


def rms(values: Sequence[float]) -> float:
    if len(values) == 0:
        return 0.0
    arr = np.asarray(values, dtype=np.float64)
    return float(np.sqrt(np.mean(arr * arr)))
