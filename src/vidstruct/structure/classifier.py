"""结构分类：为场景打 segmentType，折叠为结构元素，并按时序规则校验。"""

from __future__ import annotations

from typing import Callable, Dict, Iterable, List, Optional, Sequence

from vidstruct.core import KnownType, ProgramStructure, Scene, StructuralElement, StructuralType, get_logger
from vidstruct.core.config import ClassifierConfig
from vidstruct.core.datamodels import QUIET_LOUDNESS_TAGS
from vidstruct.segment.similarity import intervals_intersect

logger = get_logger(__name__)

T = StructuralType

KNOWN_TYPE_MAPPING: Dict[KnownType, StructuralType] = {
    KnownType.BLACK_FRAMES: T.BLACK_FRAMES,
    KnownType.MONOCHROME_FRAMES: T.TRANSITION,
    KnownType.COLOR_BARS: T.COLOR_BARS,
}

# 单色帧没有独立的结构类型，校验时按 Transition 对待
_ALWAYS_ALLOWED = frozenset({T.BLACK_FRAMES, T.UNDEFINED})
_AFTER_END_CREDITS = frozenset({T.END_CREDITS, T.POST_CREDITS_SCENE, T.TEXTLESS_ELEMENT})


def is_transition_scene(scene: Scene) -> bool:
    """无对白，且为单色帧或响度处于静音区间。"""

    if scene.has_dialogue:
        return False
    return scene.known_type == KnownType.MONOCHROME_FRAMES or scene.loudness_level in QUIET_LOUDNESS_TAGS


def tag_known_segment_type(scene: Scene) -> None:
    segment_type = KNOWN_TYPE_MAPPING.get(scene.known_type) if scene.known_type else None
    if segment_type == T.TRANSITION and not is_transition_scene(scene):
        segment_type = T.PROGRAMME
    scene.segment_type = segment_type
    scene.segment_type_group = segment_type


def tag_segment_types(scenes: Sequence[Scene], structure: Optional[ProgramStructure]) -> None:
    """优先级：确定性视觉标签 > 外部结构分析（按时间区间相交） > Undefined。"""

    key_elements = structure.key_elements if structure else []
    if structure is None:
        logger.warning("No program structure available, falling back to known types only")
    for scene in scenes:
        tag_known_segment_type(scene)
        for element in key_elements:
            if intervals_intersect((element.start, element.end), scene.timestamp_range, inclusive=False):
                scene.segment_type_group = element.sequence_type
                if scene.segment_type is None:
                    scene.segment_type = element.sequence_type
        if scene.segment_type_group is None:
            scene.segment_type_group = T.UNDEFINED
        if scene.segment_type is None:
            scene.segment_type = T.UNDEFINED


def group_scenes_by_segment_type(scenes: Sequence[Scene]) -> List[List[Scene]]:
    groups: List[List[Scene]] = []
    for scene in scenes:
        if groups and groups[-1][-1].segment_type_group == scene.segment_type_group:
            groups[-1].append(scene)
        else:
            groups.append([scene])
    return groups


def to_structural_elements(groups: Iterable[List[Scene]], gap_tolerance_ms: int = 0) -> List[StructuralElement]:
    """每组连续场景生成一个元素；元素之间（及首个元素之前）超出容差的空档补合成 Programme。"""

    elements: List[StructuralElement] = []
    for group in groups:
        if not group:
            continue
        ordered = sorted(group, key=lambda scene: scene.scene_id)
        elements.append(
            StructuralElement(
                type=ordered[0].segment_type_group or T.UNDEFINED,
                timestamp_range=(ordered[0].timestamp_range[0], ordered[-1].timestamp_range[1]),
                scenes=ordered,
            )
        )
    elements.sort(key=lambda element: element.timestamp_range[0])

    tiled: List[StructuralElement] = []
    cursor = 0
    for element in elements:
        start = element.timestamp_range[0]
        if start - cursor > gap_tolerance_ms:
            tiled.append(StructuralElement(type=T.PROGRAMME, timestamp_range=(cursor, start), synthetic=True))
        tiled.append(element)
        cursor = element.timestamp_range[1]
    return tiled


def _allowed(prior_types: Sequence[StructuralType], allow: Iterable[StructuralType]) -> bool:
    allowed = _ALWAYS_ALLOWED | set(allow)
    return all(prior in allowed for prior in prior_types)


def _disallowed(prior_types: Sequence[StructuralType], disallow: Iterable[StructuralType]) -> bool:
    blocked = set(disallow)
    return any(prior in blocked for prior in prior_types)


def _scene_sequence_type(element: StructuralElement) -> Optional[StructuralType]:
    """场景级语义分析给出的子类型，用作降级时的首选回退。"""

    for scene in element.scenes:
        if scene.sequence_type is not None and scene.sequence_type != element.type:
            return scene.sequence_type
    return None


def _validate_technical_slate(element: StructuralElement, prior: Sequence[StructuralType]) -> StructuralType:
    if not _allowed(prior, (T.TRANSITION, T.COLOR_BARS, T.COUNTDOWN_CLOCK, T.TECHNICAL_SLATE)):
        return T.PROGRAMME
    return element.type


def _validate_transition(element: StructuralElement, prior: Sequence[StructuralType]) -> StructuralType:
    if any(is_transition_scene(scene) for scene in element.scenes):
        return T.TRANSITION
    return T.PROGRAMME


def _validate_countdown_clock(element: StructuralElement, prior: Sequence[StructuralType]) -> StructuralType:
    if not _allowed(prior, (T.TRANSITION, T.COLOR_BARS, T.TECHNICAL_SLATE, T.COUNTDOWN_CLOCK)):
        return _validate_transition(element, prior)
    return element.type


def _validate_recap(element: StructuralElement, prior: Sequence[StructuralType]) -> StructuralType:
    if not _allowed(prior, (T.TRANSITION, T.COLOR_BARS, T.COUNTDOWN_CLOCK, T.TECHNICAL_SLATE, T.IDENTS)):
        return _scene_sequence_type(element) or T.INTRO
    return element.type


def _validate_intro(element: StructuralElement, prior: Sequence[StructuralType]) -> StructuralType:
    if not _allowed(prior, (T.TRANSITION, T.COLOR_BARS, T.COUNTDOWN_CLOCK, T.TECHNICAL_SLATE, T.IDENTS, T.RECAP)):
        return _scene_sequence_type(element) or T.PROGRAMME
    return element.type


def _validate_opening_credits(element: StructuralElement, prior: Sequence[StructuralType]) -> StructuralType:
    if _disallowed(prior, _AFTER_END_CREDITS):
        return _scene_sequence_type(element) or T.PROGRAMME
    return element.type


def _validate_programme(element: StructuralElement, prior: Sequence[StructuralType]) -> StructuralType:
    if not _disallowed(prior, _AFTER_END_CREDITS):
        return element.type
    for scene in element.scenes:
        if scene.has_dialogue:
            return T.POST_CREDITS_SCENE
        # 没有响度标签时同样不能认定为静音
        if scene.loudness_level not in QUIET_LOUDNESS_TAGS:
            return T.UNDEFINED
    return T.TEXTLESS_ELEMENT


def _validate_textless_element(element: StructuralElement, prior: Sequence[StructuralType]) -> StructuralType:
    if T.END_CREDITS not in prior:
        return T.PROGRAMME
    return element.type


Validator = Callable[[StructuralElement, Sequence[StructuralType]], StructuralType]

VALIDATORS: Dict[StructuralType, Validator] = {
    T.TECHNICAL_SLATE: _validate_technical_slate,
    T.COUNTDOWN_CLOCK: _validate_countdown_clock,
    T.RECAP: _validate_recap,
    T.INTRO: _validate_intro,
    T.OPENING_CREDITS: _validate_opening_credits,
    T.PROGRAMME: _validate_programme,
    T.TRANSITION: _validate_transition,
    T.TEXTLESS_ELEMENT: _validate_textless_element,
}


def validate_temporal_order(elements: Sequence[StructuralElement]) -> List[StructuralElement]:
    """单次前向扫描；每个元素只和已接受的前序类型比较，降级时保留原类型。"""

    prior_types: List[StructuralType] = []
    for element in elements:
        if element.synthetic:
            continue
        validator = VALIDATORS.get(element.type)
        suggested = validator(element, prior_types) if validator else element.type
        if suggested != element.type:
            element.misclassified = True
            element.suggested_type = suggested
            logger.info(
                "Element %s at %s demoted to %s",
                element.type.value,
                element.timestamp_range,
                suggested.value,
            )
        prior_types.append(element.effective_type)
    return list(elements)


def classify_scenes(
    scenes: Sequence[Scene],
    config: ClassifierConfig,
    structure: Optional[ProgramStructure] = None,
) -> List[StructuralElement]:
    """打标签 -> 分组 -> 生成结构元素 ->（可选）时序校验。"""

    if not scenes:
        return []
    tag_segment_types(scenes, structure)
    groups = group_scenes_by_segment_type(scenes)
    elements = to_structural_elements(groups, config.element_gap_tolerance_ms)
    if config.validate_temporal_order:
        elements = validate_temporal_order(elements)
    logger.info("Classified %d scenes into %d structural elements", len(scenes), len(elements))
    return elements
