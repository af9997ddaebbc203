"""结构分类测试：打标签优先级、元素折叠与时序校验降级。"""

import pytest

from vidstruct.core import KeyElement, KnownType, LoudnessTag, ProgramStructure, StructuralType
from vidstruct.core.config import ClassifierConfig
from vidstruct.structure import classify_scenes, is_transition_scene, tag_segment_types, to_structural_elements
from vidstruct.structure.classifier import group_scenes_by_segment_type, validate_temporal_order

T = StructuralType


def structure_of(*elements) -> ProgramStructure:
    return ProgramStructure(
        program_name="Demo",
        key_elements=[KeyElement(key_element=t.value, start=s, end=e, sequence_type=t) for t, s, e in elements],
    )


@pytest.fixture
def credits_scenes(scene_factory):
    scenes, frames = scene_factory(
        [
            {"known_type": KnownType.BLACK_FRAMES},
            {"transcripts": ["hello"]},
            {"transcripts": ["again"]},
            {},
            {"loudness_level": LoudnessTag.VERY_QUIET},
        ]
    )
    structure = structure_of(
        (T.PROGRAMME, 1000, 2999),
        (T.END_CREDITS, 3000, 3999),
        (T.PROGRAMME, 4000, 4999),
    )
    return scenes, frames, structure


def test_silent_programme_after_end_credits_becomes_textless(credits_scenes) -> None:
    scenes, _, structure = credits_scenes

    elements = classify_scenes(scenes, ClassifierConfig(validate_temporal_order=True), structure)

    assert [el.type for el in elements] == [T.BLACK_FRAMES, T.PROGRAMME, T.END_CREDITS, T.PROGRAMME]
    last = elements[-1]
    assert last.misclassified is True
    assert last.suggested_type == T.TEXTLESS_ELEMENT
    assert last.type == T.PROGRAMME
    assert last.effective_type == T.TEXTLESS_ELEMENT
    assert not any(el.misclassified for el in elements[:-1])


def test_validation_is_gated_by_config(credits_scenes) -> None:
    scenes, _, structure = credits_scenes

    elements = classify_scenes(scenes, ClassifierConfig(), structure)

    assert not any(el.misclassified for el in elements)


def test_programme_with_dialogue_after_credits_is_post_credits(scene_factory) -> None:
    scenes, _ = scene_factory([{}, {"transcripts": ["see you"]}])
    structure = structure_of((T.END_CREDITS, 0, 999), (T.PROGRAMME, 1000, 1999))

    elements = classify_scenes(scenes, ClassifierConfig(validate_temporal_order=True), structure)

    assert elements[1].suggested_type == T.POST_CREDITS_SCENE


def test_loud_programme_after_credits_is_undefined(scene_factory) -> None:
    scenes, _ = scene_factory([{}, {"loudness_level": LoudnessTag.LOUD}])
    structure = structure_of((T.END_CREDITS, 0, 999), (T.PROGRAMME, 1000, 1999))

    elements = classify_scenes(scenes, ClassifierConfig(validate_temporal_order=True), structure)

    assert elements[1].suggested_type == T.UNDEFINED


def test_known_type_wins_over_analysis(scene_factory) -> None:
    scenes, _ = scene_factory([{"known_type": KnownType.BLACK_FRAMES}, {}])
    structure = structure_of((T.OPENING_CREDITS, 0, 1999))

    tag_segment_types(scenes, structure)

    assert scenes[0].segment_type == T.BLACK_FRAMES
    assert scenes[0].segment_type_group == T.OPENING_CREDITS
    assert scenes[1].segment_type == T.OPENING_CREDITS


def test_monochrome_scene_needs_silence_to_be_transition(scene_factory) -> None:
    scenes, _ = scene_factory(
        [
            {"known_type": KnownType.MONOCHROME_FRAMES},
            {"known_type": KnownType.MONOCHROME_FRAMES, "transcripts": ["talking"]},
        ]
    )

    tag_segment_types(scenes, None)

    assert is_transition_scene(scenes[0])
    assert scenes[0].segment_type == T.TRANSITION
    assert not is_transition_scene(scenes[1])
    assert scenes[1].segment_type == T.PROGRAMME


def test_untagged_scene_is_undefined(scene_factory) -> None:
    scenes, _ = scene_factory([{}])

    tag_segment_types(scenes, None)

    assert scenes[0].segment_type == T.UNDEFINED
    assert scenes[0].segment_type_group == T.UNDEFINED


def test_elements_partition_scenes_and_fill_gaps(scene_factory) -> None:
    scenes, _ = scene_factory([{"duration": 5000}, {}, {}, {}])
    for scene, group in zip(scenes, (T.TITLE, T.TITLE, T.PROGRAMME, T.PROGRAMME)):
        scene.segment_type_group = group
    # 人为制造 Title 与 Programme 之间的空档
    scenes[2].timestamp_range = (9000, 9999)
    scenes[3].timestamp_range = (10000, 10999)

    groups = group_scenes_by_segment_type(scenes)
    elements = to_structural_elements(groups, gap_tolerance_ms=1000)

    assert [len(group) for group in groups] == [2, 2]
    assert [el.type for el in elements] == [T.TITLE, T.PROGRAMME, T.PROGRAMME]
    assert elements[1].synthetic is True
    assert elements[1].timestamp_range == (5999, 9000)
    assert [s.scene_id for el in elements for s in el.scenes] == [0, 1, 2, 3]


def test_leading_gap_is_filled(scene_factory) -> None:
    scenes, _ = scene_factory([{}])
    scenes[0].segment_type_group = T.PROGRAMME
    scenes[0].timestamp_range = (5000, 6000)

    elements = to_structural_elements([scenes], gap_tolerance_ms=1000)

    assert elements[0].synthetic is True
    assert elements[0].timestamp_range == (0, 5000)


def test_textless_needs_end_credits(scene_factory) -> None:
    scenes, _ = scene_factory([{}, {}])
    scenes[0].segment_type_group = T.TEXTLESS_ELEMENT
    scenes[1].segment_type_group = T.TECHNICAL_SLATE

    elements = validate_temporal_order(to_structural_elements(group_scenes_by_segment_type(scenes), 1000))

    assert elements[0].suggested_type == T.PROGRAMME
    # 前序已被降级为 Programme，技术板不再合法
    assert elements[1].suggested_type == T.PROGRAMME


def test_recap_falls_back_to_scene_sequence_type(scene_factory) -> None:
    scenes, _ = scene_factory([{}, {"sequence_type": T.OPENING_CREDITS}])
    scenes[0].segment_type_group = T.PROGRAMME
    scenes[1].segment_type_group = T.RECAP

    elements = validate_temporal_order(to_structural_elements(group_scenes_by_segment_type(scenes), 1000))

    assert elements[1].misclassified
    assert elements[1].suggested_type == T.OPENING_CREDITS


def test_synthetic_elements_are_not_validated(scene_factory) -> None:
    scenes, _ = scene_factory([{}])
    scenes[0].segment_type_group = T.TECHNICAL_SLATE
    scenes[0].timestamp_range = (5000, 6000)

    elements = validate_temporal_order(to_structural_elements([scenes], gap_tolerance_ms=0))

    assert elements[0].synthetic
    assert not elements[0].misclassified
    assert not elements[1].misclassified


def test_classify_empty() -> None:
    assert classify_scenes([], ClassifierConfig()) == []
