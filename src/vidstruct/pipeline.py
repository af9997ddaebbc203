"""端到端流程：帧 -> 镜头 -> 场景 ->（可选）边界细化 -> 结构分类 -> SMPTE -> 广告插入点。

``run_pipeline`` 只处理内存中的对象；``run_stored_pipeline`` 负责从 ``DocumentStore``
读取输入并把各阶段文档写回同一前缀下。
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from vidstruct.adbreak import adbreak_document, search_ad_breaks
from vidstruct.core import (
    AdBreakCandidate,
    DialogueGroup,
    DocumentStore,
    Frame,
    LoudnessGroup,
    PipelineConfig,
    ProgramStructure,
    Scene,
    Shot,
    SmpteMarker,
    StructuralElement,
    get_logger,
)
from vidstruct.core.config import AdBreakConfig
from vidstruct.core.datamodels import Range
from vidstruct.core.errors import DocumentFormatError, EmptyInputError
from vidstruct.refine import (
    BoundaryRefiner,
    FrameExtractor,
    FramePoolExtractor,
    RefineState,
    RefineStatus,
    collect_boundaries,
    deadline_from_remaining,
    load_state,
    merge_boundary_frames,
    regroup,
    save_state,
)
from vidstruct.segment import (
    annotate_adjacent_frames,
    attach_frames,
    build_frame_map,
    load_dialogue_groups,
    load_loudnesses,
    load_pauses,
    tag_dialogue_to_scenes,
)
from vidstruct.structure import (
    PrecomputedAnalyzer,
    SceneAnalyzer,
    build_scene_output,
    classify_scenes,
    generate_smpte_markers,
    load_smpte_markers,
    identify_program_structure,
    scene_output_document,
    smpte_document,
)

logger = get_logger(__name__)

FRAME_EMBEDDINGS_JSON = "frame_embeddings.json"
SHOTS_TO_SCENES_JSON = "shots_to_scenes.json"
SMPTE_ELEMENTS_JSON = "smpte_elements.json"
SCENE_JSON = "scene.json"
ADBREAK_JSON = "adbreak.json"
PAUSES_JSON = "pauses.json"
LOUDNESS_JSON = "loudness.json"
DIALOGUE_GROUPS_JSON = "dialogue_groups.json"
PROGRAM_STRUCTURE_JSON = "program_structure.json"
BOUNDARY_FRAMES_JSON = "boundary_frames.json"


@dataclass(slots=True)
class PipelineResult:
    """单次运行的全部产物。"""

    frames: List[Frame]
    shots: List[Shot]
    scenes: List[Scene]
    elements: List[StructuralElement] = field(default_factory=list)
    markers: List[SmpteMarker] = field(default_factory=list)
    scene_output: List[Dict[str, Any]] = field(default_factory=list)
    candidates: List[AdBreakCandidate] = field(default_factory=list)
    program_structure: Optional[ProgramStructure] = None
    refine_state: Optional[RefineState] = None
    api_calls_consumed: int = 0

    @property
    def program_name(self) -> Optional[str]:
        return self.program_structure.program_name if self.program_structure else None


def group_frames(
    frames: Sequence[Frame],
    config: PipelineConfig,
    *,
    loudnesses: Sequence[LoudnessGroup] = (),
    pauses: Sequence[Range] = (),
) -> Tuple[List[Frame], List[Shot], List[Scene]]:
    """计算相邻帧字段后执行镜头与场景分组。"""

    if not frames:
        raise EmptyInputError("没有可用的帧")
    ordered = list(frames)
    annotate_adjacent_frames(ordered)
    grouped = regroup(ordered, config, loudnesses=loudnesses, pauses=pauses)
    return ordered, grouped.shots, grouped.scenes


def refine_until_complete(
    state: RefineState,
    refiner: BoundaryRefiner,
    config: PipelineConfig,
    *,
    on_invocation: Optional[Callable[[RefineState], None]] = None,
) -> RefineState:
    """重复有界调用直到全部边界完成；超过重试上限时由 refiner 抛出致命错误。"""

    refine_cfg = config.refine
    while True:
        deadline = deadline_from_remaining(refine_cfg.invocation_budget_ms, refine_cfg.buffer_ms)
        refiner.run(state, deadline)
        if on_invocation is not None:
            on_invocation(state)
        if state.status == RefineStatus.COMPLETED:
            return state


def run_pipeline(
    frames: Sequence[Frame],
    config: PipelineConfig,
    *,
    loudnesses: Sequence[LoudnessGroup] = (),
    pauses: Sequence[Range] = (),
    dialogue_groups: Sequence[DialogueGroup] = (),
    analyzer: Optional[SceneAnalyzer] = None,
    extractor: Optional[FrameExtractor] = None,
    on_refine_invocation: Optional[Callable[[RefineState], None]] = None,
) -> PipelineResult:
    started = time.perf_counter()
    frames, shots, scenes = group_frames(frames, config, loudnesses=loudnesses, pauses=pauses)

    refine_state: Optional[RefineState] = None
    api_calls = 0
    if extractor is not None:
        units = shots if config.refine.refine_shots else scenes
        refine_state = RefineState(item_id=0, boundaries=collect_boundaries(units, build_frame_map(frames)))
        refiner = BoundaryRefiner(extractor, config.refine)
        refine_until_complete(refine_state, refiner, config, on_invocation=on_refine_invocation)
        merged = merge_boundary_frames(frames, [refine_state])
        frames = merged.frames
        api_calls = merged.api_calls_consumed
        regrouped = regroup(frames, config, loudnesses=loudnesses, pauses=pauses)
        shots, scenes = regrouped.shots, regrouped.scenes
    else:
        logger.info("No frame extractor configured, skip boundary refinement")

    result = classify_and_search(
        frames,
        scenes,
        config,
        loudnesses=loudnesses,
        pauses=pauses,
        dialogue_groups=dialogue_groups,
        analyzer=analyzer,
    )
    result.shots = shots
    result.refine_state = refine_state
    result.api_calls_consumed = api_calls
    logger.info("Pipeline finished in %.2fs", time.perf_counter() - started)
    return result


def classify_and_search(
    frames: Sequence[Frame],
    scenes: Sequence[Scene],
    config: PipelineConfig,
    *,
    loudnesses: Sequence[LoudnessGroup] = (),
    pauses: Sequence[Range] = (),
    dialogue_groups: Sequence[DialogueGroup] = (),
    analyzer: Optional[SceneAnalyzer] = None,
) -> PipelineResult:
    """结构分类、SMPTE 标记、场景输出与广告插入点，供完整流程与 CLI 单步复用。"""

    tag_dialogue_to_scenes(scenes, dialogue_groups)
    frame_map = build_frame_map(frames)
    structure = identify_program_structure(scenes, analyzer, config.classifier.prompt_template)
    elements = classify_scenes(scenes, config.classifier, structure)
    markers = generate_smpte_markers(scenes, elements, frame_map)
    scene_output = build_scene_output(elements, scenes, frame_map)
    candidates = search_ad_breaks(
        scenes,
        markers,
        frame_map,
        config.adbreak,
        pauses=pauses,
        loudnesses=loudnesses,
    )
    return PipelineResult(
        frames=list(frames),
        shots=[shot for scene in scenes for shot in scene.shots],
        scenes=list(scenes),
        elements=elements,
        markers=markers,
        scene_output=scene_output,
        candidates=candidates,
        program_structure=structure,
    )


# ---- 文档读写 ----


def _key(prefix: str, name: str) -> str:
    return f"{prefix.rstrip('/')}/{name}" if prefix else name


def _load_frames_payload(store: DocumentStore, bucket: str, prefix: str) -> Dict[str, Any]:
    payload = store.download(bucket, _key(prefix, FRAME_EMBEDDINGS_JSON))
    if not isinstance(payload, dict) or "frames" not in payload:
        raise DocumentFormatError(f"{FRAME_EMBEDDINGS_JSON} 需包含 frames 字段")
    return payload


def load_frames(store: DocumentStore, bucket: str, prefix: str) -> List[Frame]:
    payload = _load_frames_payload(store, bucket, prefix)
    frames = [Frame.from_dict(item) for item in payload["frames"]]
    frames.sort(key=lambda frame: frame.frame_num)
    return frames


def stored_api_calls(store: DocumentStore, bucket: str, prefix: str) -> int:
    """帧文档中累计的抽帧/向量化调用次数；文档不存在时为 0。"""

    if not store.exists(bucket, _key(prefix, FRAME_EMBEDDINGS_JSON)):
        return 0
    value = _load_frames_payload(store, bucket, prefix).get("apiCallsConsumed", 0)
    if not isinstance(value, int) or isinstance(value, bool) or value < 0:
        raise DocumentFormatError(f"apiCallsConsumed 需为非负整数: {value!r}")
    return value


def load_audio(store: DocumentStore, bucket: str, prefix: str) -> Tuple[List[LoudnessGroup], List[Range]]:
    """音频数据可选，缺失时返回空列表并记录告警。"""

    loudnesses: List[LoudnessGroup] = []
    pauses: List[Range] = []
    loudness_key = _key(prefix, LOUDNESS_JSON)
    pauses_key = _key(prefix, PAUSES_JSON)
    if store.exists(bucket, loudness_key):
        loudnesses = load_loudnesses(store.download(bucket, loudness_key))
    else:
        logger.warning("No loudness document at %s/%s", bucket, loudness_key)
    if store.exists(bucket, pauses_key):
        pauses = load_pauses(store.download(bucket, pauses_key))
    else:
        logger.warning("No pause document at %s/%s", bucket, pauses_key)
    return loudnesses, pauses


def load_dialogue(store: DocumentStore, bucket: str, prefix: str) -> List[DialogueGroup]:
    """对白分组可选，缺失时不做对白映射。"""

    key = _key(prefix, DIALOGUE_GROUPS_JSON)
    if not store.exists(bucket, key):
        logger.warning("No dialogue document at %s/%s", bucket, key)
        return []
    payload = store.download(bucket, key)
    if not isinstance(payload, list):
        raise DocumentFormatError(f"{DIALOGUE_GROUPS_JSON} 需为数组")
    return load_dialogue_groups(payload)


def load_analyzer(store: DocumentStore, bucket: str, prefix: str) -> Optional[SceneAnalyzer]:
    key = _key(prefix, PROGRAM_STRUCTURE_JSON)
    if not store.exists(bucket, key):
        return None
    return PrecomputedAnalyzer(store.download(bucket, key))


def load_extractor(store: DocumentStore, bucket: str, prefix: str) -> Optional[FrameExtractor]:
    """``boundary_frames.json`` 存放上游预抽的稠密帧，存在时作为离线抽帧来源。"""

    key = _key(prefix, BOUNDARY_FRAMES_JSON)
    if not store.exists(bucket, key):
        return None
    payload = store.download(bucket, key)
    if not isinstance(payload, dict) or "frames" not in payload:
        raise DocumentFormatError(f"{BOUNDARY_FRAMES_JSON} 需包含 frames 字段")
    return FramePoolExtractor([Frame.from_dict(item) for item in payload["frames"]])


def load_scenes(store: DocumentStore, bucket: str, prefix: str, frames: Sequence[Frame]) -> List[Scene]:
    payload = store.download(bucket, _key(prefix, SHOTS_TO_SCENES_JSON))
    if not isinstance(payload, list):
        raise DocumentFormatError(f"{SHOTS_TO_SCENES_JSON} 需为数组")
    scenes = [Scene.from_dict(item) for item in payload]
    attach_frames(scenes, frames)
    return scenes


def frames_document(frames: Sequence[Frame], api_calls_consumed: int = 0) -> Dict[str, Any]:
    return {"frames": [frame.to_dict() for frame in frames], "apiCallsConsumed": api_calls_consumed}


def save_grouping(
    store: DocumentStore,
    bucket: str,
    prefix: str,
    frames: Sequence[Frame],
    scenes: Sequence[Scene],
    api_calls_consumed: int = 0,
) -> None:
    """``api_calls_consumed`` 为本次新增的调用次数，累加到文档中已有的计数上。"""

    total = stored_api_calls(store, bucket, prefix) + api_calls_consumed
    store.upload(bucket, _key(prefix, FRAME_EMBEDDINGS_JSON), frames_document(frames, total))
    store.upload(bucket, _key(prefix, SHOTS_TO_SCENES_JSON), [scene.to_dict() for scene in scenes])


def save_structure(store: DocumentStore, bucket: str, prefix: str, result: PipelineResult) -> None:
    store.upload(bucket, _key(prefix, SHOTS_TO_SCENES_JSON), [scene.to_dict() for scene in result.scenes])
    store.upload(bucket, _key(prefix, SMPTE_ELEMENTS_JSON), smpte_document(result.program_name, result.markers))
    store.upload(bucket, _key(prefix, SCENE_JSON), scene_output_document(prefix, result.scene_output))
    store.upload(bucket, _key(prefix, ADBREAK_JSON), adbreak_document(prefix, result.candidates))


def run_stored_pipeline(
    store: DocumentStore,
    bucket: str,
    prefix: str,
    config: PipelineConfig,
    *,
    analyzer: Optional[SceneAnalyzer] = None,
    extractor: Optional[FrameExtractor] = None,
) -> PipelineResult:
    """从存储读取帧与音频，运行全流程并写回全部输出文档。"""

    frames = load_frames(store, bucket, prefix)
    loudnesses, pauses = load_audio(store, bucket, prefix)
    dialogue_groups = load_dialogue(store, bucket, prefix)
    if analyzer is None:
        analyzer = load_analyzer(store, bucket, prefix)
    if extractor is None:
        extractor = load_extractor(store, bucket, prefix)

    def _persist_state(state: RefineState) -> None:
        save_state(store, bucket, prefix, state)

    result = run_pipeline(
        frames,
        config,
        loudnesses=loudnesses,
        pauses=pauses,
        dialogue_groups=dialogue_groups,
        analyzer=analyzer,
        extractor=extractor,
        on_refine_invocation=_persist_state,
    )
    save_grouping(store, bucket, prefix, result.frames, result.scenes, result.api_calls_consumed)
    save_structure(store, bucket, prefix, result)
    return result


def refine_stored_item(
    store: DocumentStore,
    bucket: str,
    prefix: str,
    config: PipelineConfig,
    extractor: FrameExtractor,
    *,
    item_id: int = 0,
    n_iterations: int = 1,
) -> RefineState:
    """一次有界调用：加载或创建状态，运行后立即持久化；全部完成时合并并重新分组。"""

    frames = load_frames(store, bucket, prefix)
    state = load_state(store, bucket, prefix, item_id)
    if state is None:
        scenes = load_scenes(store, bucket, prefix, frames)
        units: Sequence[Any] = scenes
        if config.refine.refine_shots:
            units = [shot for scene in scenes for shot in scene.shots]
        boundaries = collect_boundaries(units, build_frame_map(frames), item_id=item_id, n_iterations=n_iterations)
        state = RefineState(item_id=item_id, boundaries=boundaries)
    elif state.status == RefineStatus.COMPLETED:
        # 已合并过，重复合并会重复累计调用次数
        logger.info("Refine item %d already completed, nothing to merge", item_id)
        return state

    deadline = deadline_from_remaining(config.refine.invocation_budget_ms, config.refine.buffer_ms)
    BoundaryRefiner(extractor, config.refine).run(state, deadline)
    save_state(store, bucket, prefix, state)

    if state.status == RefineStatus.COMPLETED:
        loudnesses, pauses = load_audio(store, bucket, prefix)
        merged = merge_boundary_frames(frames, [state])
        regrouped = regroup(merged.frames, config, loudnesses=loudnesses, pauses=pauses)
        save_grouping(store, bucket, prefix, merged.frames, regrouped.scenes, merged.api_calls_consumed)
    return state


def search_stored_ad_breaks(
    store: DocumentStore,
    bucket: str,
    prefix: str,
    config: PipelineConfig,
    adbreak_config: Optional[AdBreakConfig] = None,
) -> List[AdBreakCandidate]:
    """基于已保存的场景与 SMPTE 文档重新搜索广告插入点，只覆盖 adbreak.json。"""

    frames = load_frames(store, bucket, prefix)
    scenes = load_scenes(store, bucket, prefix, frames)
    loudnesses, pauses = load_audio(store, bucket, prefix)
    markers = load_smpte_markers(store.download(bucket, _key(prefix, SMPTE_ELEMENTS_JSON)))
    candidates = search_ad_breaks(
        scenes,
        markers,
        build_frame_map(frames),
        adbreak_config or config.adbreak,
        pauses=pauses,
        loudnesses=loudnesses,
    )
    store.upload(bucket, _key(prefix, ADBREAK_JSON), adbreak_document(prefix, candidates))
    return candidates
