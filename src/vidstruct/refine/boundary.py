"""边界细化：在场景/镜头切点之间补采样帧，使切点精确到帧。

每次调用受一个绝对截止时间约束，可多次重入：已经带 ``response`` 的边界会被跳过，
状态文档在每次调用后持久化；重试次数超过上限视为致命错误。
"""

from __future__ import annotations

import copy
import os
import time
from bisect import bisect_left, bisect_right
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple, Union

from vidstruct.core import DocumentStore, Frame, Scene, Shot, get_logger
from vidstruct.core.config import RefineConfig
from vidstruct.core.errors import BailoutExceededError, DocumentFormatError, FrameNotFoundError, FrameNumberingError

logger = get_logger(__name__)

Deadline = Union[float, datetime]


class RefineStatus(str, Enum):
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"


@dataclass(slots=True, eq=False)
class ExtractionResult:
    """外部抽帧服务的返回：新插入的帧及消耗的 embedding 调用次数。"""

    new_frames: List[Frame] = field(default_factory=list)
    api_calls_consumed: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "newFrames": [frame.to_dict() for frame in self.new_frames],
            "apiCallsConsumed": self.api_calls_consumed,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ExtractionResult":
        return cls(
            new_frames=[Frame.from_dict(item) for item in data.get("newFrames", [])],
            api_calls_consumed=int(data.get("apiCallsConsumed", 0)),
        )


class FrameExtractor(Protocol):
    """抽帧协作方接口：在两帧之间补采样并生成 embedding。"""

    def extract_frames(self, from_frame: Frame, to_frame: Frame) -> ExtractionResult:
        ...


class FramePoolExtractor:
    """从预先抽好的稠密帧集合中取两帧之间的帧，每帧计一次 embedding 调用。"""

    def __init__(self, frames: Sequence[Frame]) -> None:
        self._frames = sorted(frames, key=lambda frame: frame.frame_num)
        self._numbers = [frame.frame_num for frame in self._frames]

    def extract_frames(self, from_frame: Frame, to_frame: Frame) -> ExtractionResult:
        lo = bisect_right(self._numbers, from_frame.frame_num)
        hi = bisect_left(self._numbers, to_frame.frame_num)
        picked = [copy.copy(frame) for frame in self._frames[lo:hi]]
        return ExtractionResult(new_frames=picked, api_calls_consumed=len(picked))


@dataclass(slots=True, eq=False)
class Boundary:
    index: int
    from_id: int
    to_id: int
    from_frame: Frame
    to_frame: Frame
    response: Optional[ExtractionResult] = None

    @property
    def done(self) -> bool:
        return self.response is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "fromId": self.from_id,
            "toId": self.to_id,
            "frames": [self.from_frame.to_dict(), self.to_frame.to_dict()],
            "response": self.response.to_dict() if self.response else None,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Boundary":
        frames = data.get("frames") or []
        if len(frames) != 2:
            raise DocumentFormatError(f"边界需要两个端点帧: {data.get('index')}")
        response = data.get("response")
        return cls(
            index=int(data["index"]),
            from_id=int(data["fromId"]),
            to_id=int(data["toId"]),
            from_frame=Frame.from_dict(frames[0]),
            to_frame=Frame.from_dict(frames[1]),
            response=ExtractionResult.from_dict(response) if response else None,
        )


@dataclass(slots=True, eq=False)
class RefineState:
    """一次细化任务（item）的可恢复状态。"""

    item_id: int
    boundaries: List[Boundary] = field(default_factory=list)
    retries: int = 0
    status: RefineStatus = RefineStatus.IN_PROGRESS
    progress: int = 0

    @property
    def total_count(self) -> int:
        return len(self.boundaries)

    @property
    def processed_count(self) -> int:
        return sum(1 for boundary in self.boundaries if boundary.done)

    @property
    def completed(self) -> bool:
        return self.processed_count == self.total_count

    def to_dict(self) -> Dict[str, Any]:
        return {
            "itemId": self.item_id,
            "boundaries": [boundary.to_dict() for boundary in self.boundaries],
            "retries": self.retries,
            "status": self.status.value,
            "progress": self.progress,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RefineState":
        return cls(
            item_id=int(data["itemId"]),
            boundaries=[Boundary.from_dict(item) for item in data.get("boundaries", [])],
            retries=int(data.get("retries", 0)),
            status=RefineStatus(data.get("status", RefineStatus.IN_PROGRESS.value)),
            progress=int(data.get("progress", 0)),
        )


def collect_boundaries(
    units: Sequence[Union[Scene, Shot]],
    frame_map: Mapping[int, Frame],
    *,
    item_id: int = 0,
    n_iterations: int = 1,
) -> List[Boundary]:
    """收集相邻场景（或镜头）之间间隔超过一帧的切点。

    ``n_iterations`` > 1 时按下标取模分片，只保留属于 ``item_id`` 的部分。
    """

    boundaries: List[Boundary] = []
    for idx in range(len(units) - 1):
        if idx % n_iterations != item_id:
            continue
        cur = units[idx]
        nex = units[idx + 1]
        frame_from = cur.frame_range[1]
        frame_to = nex.frame_range[0]
        # 已经是相邻帧，无需细化
        if frame_to - frame_from <= 1:
            continue
        if frame_from not in frame_map:
            raise FrameNotFoundError(f"Frame#{frame_from} not found")
        if frame_to not in frame_map:
            raise FrameNotFoundError(f"Frame#{frame_to} not found")
        boundaries.append(
            Boundary(
                index=len(boundaries),
                from_id=_unit_id(cur),
                to_id=_unit_id(nex),
                from_frame=frame_map[frame_from],
                to_frame=frame_map[frame_to],
            )
        )
    return boundaries


def _unit_id(unit: Union[Scene, Shot]) -> int:
    return unit.scene_id if isinstance(unit, Scene) else unit.shot_id


def validate_response(boundary: Boundary, response: ExtractionResult) -> None:
    """新帧帧号必须严格落在 (from - 1, to + 1) 之间，否则说明帧编号已损坏。"""

    fmin = boundary.from_frame.frame_num - 1
    fmax = boundary.to_frame.frame_num + 1
    for frame in response.new_frames:
        if not fmin < frame.frame_num < fmax:
            raise FrameNumberingError(
                f"Boundary #{boundary.index}: frame {frame.frame_num} out of range, expecting ({fmin}, {fmax})"
            )


def to_epoch_seconds(deadline: Deadline) -> float:
    if isinstance(deadline, datetime):
        return deadline.timestamp()
    return float(deadline)


def deadline_from_remaining(remaining_ms: int, buffer_ms: int, *, now: Optional[float] = None) -> float:
    """根据剩余执行时间与缓冲时间换算出绝对截止时间（epoch 秒）。"""

    current = time.time() if now is None else now
    return current + max(0, remaining_ms - buffer_ms) / 1000.0


class BoundaryRefiner:
    """固定大小线程池并行处理边界；合并结果只在所有 worker 返回后于主线程进行。"""

    def __init__(
        self,
        extractor: FrameExtractor,
        config: RefineConfig,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.extractor = extractor
        self.config = config
        self._clock = clock

    @property
    def num_workers(self) -> int:
        return max(1, self.config.max_workers or os.cpu_count() or 1)

    def run(self, state: RefineState, deadline: Deadline) -> RefineState:
        if state.retries >= self.config.bailout_retries:
            raise BailoutExceededError(
                f"Item #{state.item_id}: too many retries ({state.retries} >= {self.config.bailout_retries})"
            )

        pending = [boundary for boundary in state.boundaries if not boundary.done]
        if not pending:
            return self._finalize(state)

        deadline_ts = to_epoch_seconds(deadline)
        if self._deadline_near(deadline_ts):
            logger.warning("Item #%d: deadline already reached, no boundary processed", state.item_id)
            return self._finalize(state)

        num_workers = min(self.num_workers, len(pending))
        logger.info(
            "Item #%d: refining %d/%d boundaries with %d workers",
            state.item_id,
            len(pending),
            state.total_count,
            num_workers,
        )
        partitions = [pending[worker_id::num_workers] for worker_id in range(num_workers)]
        with ThreadPoolExecutor(max_workers=num_workers) as executor:
            futures = [
                executor.submit(self._process_partition, worker_id, partition, deadline_ts)
                for worker_id, partition in enumerate(partitions)
            ]
            # 所有 worker 结束后才合并，result() 会把 worker 异常原样抛出
            batches = [future.result() for future in futures]

        by_index = {boundary.index: boundary for boundary in state.boundaries}
        for batch in batches:
            for index, response in sorted(batch, key=lambda item: item[0]):
                boundary = by_index[index]
                validate_response(boundary, response)
                boundary.response = response
        return self._finalize(state)

    def _process_partition(
        self,
        worker_id: int,
        partition: Sequence[Boundary],
        deadline_ts: float,
    ) -> List[Tuple[int, ExtractionResult]]:
        results: List[Tuple[int, ExtractionResult]] = []
        for boundary in partition:
            if boundary.done:
                continue
            if self._deadline_near(deadline_ts):
                logger.info("Worker #%d: approaching deadline, stop before boundary #%d", worker_id, boundary.index)
                break
            response = self.extractor.extract_frames(boundary.from_frame, boundary.to_frame)
            logger.debug(
                "Worker #%d: boundary #%d -> %d new frames",
                worker_id,
                boundary.index,
                len(response.new_frames),
            )
            results.append((boundary.index, response))
        return results

    def _deadline_near(self, deadline_ts: float) -> bool:
        return (deadline_ts - self._clock()) * 1000.0 < self.config.deadline_margin_ms

    def _finalize(self, state: RefineState) -> RefineState:
        total = state.total_count
        processed = state.processed_count
        state.progress = round(processed / total * 100) if total else 100
        if processed == total:
            state.status = RefineStatus.COMPLETED
        else:
            state.status = RefineStatus.IN_PROGRESS
            state.retries += 1
        logger.info("Item #%d: %d/%d boundaries done (%d%%)", state.item_id, processed, total, state.progress)
        return state


def state_key(prefix: str, item_id: int) -> str:
    return f"{prefix.rstrip('/')}/scene_boundary_{item_id}.json" if prefix else f"scene_boundary_{item_id}.json"


def load_state(store: DocumentStore, bucket: str, prefix: str, item_id: int) -> Optional[RefineState]:
    key = state_key(prefix, item_id)
    if not store.exists(bucket, key):
        return None
    return RefineState.from_dict(store.download(bucket, key))


def save_state(store: DocumentStore, bucket: str, prefix: str, state: RefineState) -> None:
    store.upload(bucket, state_key(prefix, state.item_id), state.to_dict())
