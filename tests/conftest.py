"""测试共用的场景构造工具。"""

from typing import Any, Callable, Dict, List, Mapping, Sequence, Tuple

import numpy as np
import pytest

from vidstruct.core import DocumentStore, Frame, Scene, Shot

SceneFactory = Callable[[Sequence[Mapping[str, Any]]], Tuple[List[Scene], List[Frame]]]


def format_smpte(millis: int, fps: int = 25) -> str:
    seconds, ms = divmod(millis, 1000)
    minutes, s = divmod(seconds, 60)
    h, m = divmod(minutes, 60)
    return f"{h:02d}:{m:02d}:{s:02d}:{ms * fps // 1000:02d}"


def build_scenes(layouts: Sequence[Mapping[str, Any]]) -> Tuple[List[Scene], List[Frame]]:
    """每个场景一个镜头、两帧（首/尾），场景按时间首尾相接。

    每项支持 ``duration``（毫秒，默认 1000）、``embedding`` 以及任意 Scene 字段。
    """

    scenes: List[Scene] = []
    frames: List[Frame] = []
    cursor = 0
    for idx, layout in enumerate(layouts):
        attrs: Dict[str, Any] = dict(layout)
        duration = attrs.pop("duration", 1000)
        embedding = np.array(attrs.pop("embedding", (1.0, 0.0)), dtype=np.float32)
        pair = []
        for offset, ts in ((0, cursor), (1, cursor + duration - 1)):
            num = idx * 2 + offset
            pair.append(
                Frame(
                    frame_num=num,
                    timestamp_millis=ts,
                    smpte_timecode=format_smpte(ts),
                    embedding=embedding.copy(),
                    known_type=attrs.get("known_type"),
                    name=f"frame{num:07d}.jpg",
                )
            )
        shot = Shot.from_frames(idx, pair, known_type=attrs.get("known_type"))
        scene = Scene(
            scene_id=idx,
            shot_range=(idx, idx),
            frame_range=shot.frame_range,
            timestamp_range=shot.timestamp_range,
            smpte_timecodes=shot.smpte_timecodes,
            shots=[shot],
        )
        for key, value in attrs.items():
            setattr(scene, key, value)
        scenes.append(scene)
        frames.extend(pair)
        cursor += duration
    return scenes, frames


@pytest.fixture
def scene_factory() -> SceneFactory:
    return build_scenes


BUCKET = "media"
PREFIX = "show/ep1"


def sampled_frame(frame_num: int, embedding: Tuple[float, float]) -> Dict[str, Any]:
    """25fps 素材上的一帧，时间戳由帧号换算。"""

    ts = frame_num * 40
    return {
        "frameNum": frame_num,
        "timestampMillis": ts,
        "smpteTimecode": format_smpte(ts),
        "embedding": list(embedding),
        "name": f"frame{frame_num:07d}.jpg",
    }


@pytest.fixture
def stored_item(tmp_path):
    """两段画面各 4 个采样帧，切点 75 -> 100 之间另有稠密帧可供细化。"""

    store = DocumentStore(tmp_path / "store")
    frames = [sampled_frame(num, (1.0, 0.0)) for num in (0, 25, 50, 75)]
    frames += [sampled_frame(num, (0.0, 1.0)) for num in (100, 125, 150, 175)]
    store.upload(BUCKET, f"{PREFIX}/frame_embeddings.json", {"frames": frames})

    dense = [sampled_frame(num, (1.0, 0.0)) for num in (80, 85)]
    dense += [sampled_frame(num, (0.0, 1.0)) for num in (90, 95)]
    store.upload(BUCKET, f"{PREFIX}/boundary_frames.json", {"frames": dense})

    store.upload(
        BUCKET,
        f"{PREFIX}/program_structure.json",
        {
            "program_name": "Demo",
            "list_of_key_elements": [
                {
                    "key_element": "Program",
                    "start_time": "00:00:00.000",
                    "end_time": "00:00:07.000",
                    "reasoning": "Main content",
                }
            ],
        },
    )
    return store, BUCKET, PREFIX


@pytest.fixture
def two_cut_item(stored_item):
    """在 ``stored_item`` 后追加第三段画面，得到两个可细化的切点（75 -> 100, 175 -> 200）。"""

    store, bucket, prefix = stored_item
    frames_key = f"{prefix}/frame_embeddings.json"
    pool_key = f"{prefix}/boundary_frames.json"

    frames = store.download(bucket, frames_key)["frames"]
    frames += [sampled_frame(num, (-1.0, 0.0)) for num in (200, 225, 250, 275)]
    store.upload(bucket, frames_key, {"frames": frames})

    dense = store.download(bucket, pool_key)["frames"]
    dense += [sampled_frame(num, (0.0, 1.0)) for num in (180, 185)]
    dense += [sampled_frame(num, (-1.0, 0.0)) for num in (190, 195)]
    store.upload(bucket, pool_key, {"frames": dense})
    return store, bucket, prefix


@pytest.fixture
def dialogue_item(stored_item):
    """黑场 + 正片 + 片尾字幕 + 有对白的正片，对白分组写入 dialogue_groups.json。"""

    store, bucket, prefix = stored_item
    layout = [
        ((0, 25, 50, 75), (1.0, 0.0)),
        ((100, 125, 150, 175), (0.0, 1.0)),
        ((200, 225, 250, 275), (-1.0, 0.0)),
    ]
    frames = [sampled_frame(num, emb) for nums, emb in layout for num in nums]
    store.upload(bucket, f"{prefix}/frame_embeddings.json", {"frames": frames})
    store.path_for(bucket, f"{prefix}/boundary_frames.json").unlink()
    store.upload(
        bucket,
        f"{prefix}/program_structure.json",
        {
            "program_name": "Demo",
            "list_of_key_elements": [
                {"key_element": "Program", "start_time": "00:00:00.000", "end_time": "00:00:03.999"},
                {"key_element": "End credits", "start_time": "00:00:04.000", "end_time": "00:00:07.999"},
                {"key_element": "Program", "start_time": "00:00:08.000", "end_time": "00:00:11.000"},
            ],
        },
    )
    store.upload(
        bucket,
        f"{prefix}/dialogue_groups.json",
        [
            {
                "timestampRange": [8500, 10500],
                "transcripts": [{"start": 8500, "end": 10500, "text": "See you next week."}],
            }
        ],
    )
    return store, bucket, prefix
