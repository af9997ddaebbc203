"""端到端流程测试：内存流程与基于 DocumentStore 的存取流程。"""

import json

import pytest

from vidstruct import pipeline
from vidstruct.core import PipelineConfig, StructuralType
from vidstruct.core.config import AdBreakConfig, ClassifierConfig
from vidstruct.core.errors import EmptyInputError
from vidstruct.refine import RefineStatus
from vidstruct.structure import PrecomputedAnalyzer


def small_break_config() -> PipelineConfig:
    return PipelineConfig(adbreak=AdBreakConfig(break_interval_ms=4000, break_offset_ms=1000))


def test_group_frames_requires_input() -> None:
    with pytest.raises(EmptyInputError):
        pipeline.group_frames([], PipelineConfig())


def test_run_pipeline_without_refinement(stored_item) -> None:
    store, bucket, prefix = stored_item
    frames = pipeline.load_frames(store, bucket, prefix)

    result = pipeline.run_pipeline(frames, PipelineConfig())

    assert result.refine_state is None
    assert [scene.frame_range for scene in result.scenes] == [(0, 75), (100, 175)]
    assert result.program_name is None
    assert [el.type for el in result.elements] == [StructuralType.UNDEFINED]


def test_run_pipeline_is_deterministic(stored_item) -> None:
    store, bucket, prefix = stored_item
    analyzer = pipeline.load_analyzer(store, bucket, prefix)

    def run() -> str:
        frames = pipeline.load_frames(store, bucket, prefix)
        extractor = pipeline.load_extractor(store, bucket, prefix)
        result = pipeline.run_pipeline(frames, small_break_config(), analyzer=analyzer, extractor=extractor)
        return json.dumps(
            {
                "scenes": [scene.to_dict() for scene in result.scenes],
                "markers": [marker.to_dict() for marker in result.markers],
                "adbreak": [candidate.to_dict() for candidate in result.candidates],
            },
            sort_keys=True,
        )

    assert run() == run()


def test_run_stored_pipeline_writes_documents(stored_item) -> None:
    store, bucket, prefix = stored_item

    result = pipeline.run_stored_pipeline(store, bucket, prefix, small_break_config())

    assert result.refine_state is not None
    assert result.refine_state.status == RefineStatus.COMPLETED
    assert result.api_calls_consumed == 4
    assert [scene.frame_range for scene in result.scenes] == [(0, 85), (90, 175)]
    assert result.program_name == "Demo"

    frames_doc = store.download(bucket, f"{prefix}/frame_embeddings.json")
    assert len(frames_doc["frames"]) == 12
    assert frames_doc["apiCallsConsumed"] == 4

    state_doc = store.download(bucket, f"{prefix}/scene_boundary_0.json")
    assert state_doc["status"] == "COMPLETED"
    assert state_doc["progress"] == 100

    smpte_doc = store.download(bucket, f"{prefix}/smpte_elements.json")
    assert smpte_doc["programName"] == "Demo"
    assert [m["label"] for m in smpte_doc["smpteElements"]] == ["FFOC", "LFOC"]

    scene_doc = store.download(bucket, f"{prefix}/scene.json")
    assert scene_doc["framePrefix"] == prefix
    assert [entry["sceneRange"] for entry in scene_doc["scene"]] == [[0, 1]]

    adbreak_doc = store.download(bucket, f"{prefix}/adbreak.json")
    breaks = adbreak_doc["adbreak"]
    assert [(b["scene"]["sceneNo"], b["reason"]) for b in breaks] == [
        (0, "Lowest sim score in range"),
        (1, "Lowest sim score to previous scene (rms)"),
    ]
    scene_ids = [b["scene"]["sceneNo"] for b in breaks]
    assert len(scene_ids) == len(set(scene_ids))


def test_refine_stored_item_then_classify(stored_item) -> None:
    store, bucket, prefix = stored_item
    config = PipelineConfig()
    frames = pipeline.load_frames(store, bucket, prefix)
    frames, _, scenes = pipeline.group_frames(frames, config)
    pipeline.save_grouping(store, bucket, prefix, frames, scenes)
    extractor = pipeline.load_extractor(store, bucket, prefix)

    state = pipeline.refine_stored_item(store, bucket, prefix, config, extractor)

    assert state.status == RefineStatus.COMPLETED
    reloaded = pipeline.load_frames(store, bucket, prefix)
    assert [frame.frame_num for frame in reloaded][3:8] == [75, 80, 85, 90, 95]
    scenes = pipeline.load_scenes(store, bucket, prefix, reloaded)
    assert [scene.frame_range for scene in scenes] == [(0, 85), (90, 175)]

    result = pipeline.classify_and_search(
        reloaded,
        scenes,
        config,
        analyzer=PrecomputedAnalyzer(store.download(bucket, f"{prefix}/program_structure.json")),
    )
    assert [el.type for el in result.elements] == [StructuralType.PROGRAMME]
    assert result.scene_output[0]["technicalCueType"] == "Content"


def test_search_stored_ad_breaks(stored_item) -> None:
    store, bucket, prefix = stored_item
    pipeline.run_stored_pipeline(store, bucket, prefix, PipelineConfig())
    assert store.download(bucket, f"{prefix}/adbreak.json")["adbreak"] == []

    config = small_break_config()
    candidates = pipeline.search_stored_ad_breaks(store, bucket, prefix, config)

    assert [c.scene_id for c in candidates] == [0, 1]
    assert len(store.download(bucket, f"{prefix}/adbreak.json")["adbreak"]) == 2


def test_striped_refine_items_accumulate_api_calls(two_cut_item) -> None:
    store, bucket, prefix = two_cut_item
    config = PipelineConfig()
    frames, _, scenes = pipeline.group_frames(pipeline.load_frames(store, bucket, prefix), config)
    assert len(scenes) == 3
    pipeline.save_grouping(store, bucket, prefix, frames, scenes)
    extractor = pipeline.load_extractor(store, bucket, prefix)

    for item_id in (0, 1):
        state = pipeline.refine_stored_item(store, bucket, prefix, config, extractor, item_id=item_id, n_iterations=2)
        assert state.status == RefineStatus.COMPLETED
        assert state.total_count == 1

    frames_doc = store.download(bucket, f"{prefix}/frame_embeddings.json")
    assert frames_doc["apiCallsConsumed"] == 8
    assert len(frames_doc["frames"]) == 20


def test_completed_item_is_not_merged_again(two_cut_item) -> None:
    store, bucket, prefix = two_cut_item
    config = PipelineConfig()
    frames, _, scenes = pipeline.group_frames(pipeline.load_frames(store, bucket, prefix), config)
    pipeline.save_grouping(store, bucket, prefix, frames, scenes)
    extractor = pipeline.load_extractor(store, bucket, prefix)

    pipeline.refine_stored_item(store, bucket, prefix, config, extractor, item_id=0, n_iterations=2)
    again = pipeline.refine_stored_item(store, bucket, prefix, config, extractor, item_id=0, n_iterations=2)

    assert again.status == RefineStatus.COMPLETED
    assert store.download(bucket, f"{prefix}/frame_embeddings.json")["apiCallsConsumed"] == 4


def test_regrouping_keeps_stored_api_calls(stored_item) -> None:
    store, bucket, prefix = stored_item
    pipeline.run_stored_pipeline(store, bucket, prefix, PipelineConfig())
    config = PipelineConfig()

    frames, _, scenes = pipeline.group_frames(pipeline.load_frames(store, bucket, prefix), config)
    pipeline.save_grouping(store, bucket, prefix, frames, scenes)

    assert pipeline.stored_api_calls(store, bucket, prefix) == 4


def test_dialogue_after_end_credits_becomes_post_credits_scene(dialogue_item) -> None:
    store, bucket, prefix = dialogue_item
    config = PipelineConfig(classifier=ClassifierConfig(validate_temporal_order=True))

    result = pipeline.run_stored_pipeline(store, bucket, prefix, config)

    assert [scene.transcripts for scene in result.scenes] == [[], [], ["See you next week."]]
    assert [el.type for el in result.elements] == [
        StructuralType.PROGRAMME,
        StructuralType.END_CREDITS,
        StructuralType.PROGRAMME,
    ]
    last = result.elements[-1]
    assert last.misclassified is True
    assert last.suggested_type == StructuralType.POST_CREDITS_SCENE

    stored_scenes = store.download(bucket, f"{prefix}/shots_to_scenes.json")
    assert stored_scenes[2]["transcripts"] == ["See you next week."]


def test_silent_programme_after_end_credits_without_dialogue_document(dialogue_item) -> None:
    store, bucket, prefix = dialogue_item
    store.path_for(bucket, f"{prefix}/dialogue_groups.json").unlink()
    config = PipelineConfig(classifier=ClassifierConfig(validate_temporal_order=True))

    result = pipeline.run_stored_pipeline(store, bucket, prefix, config)

    assert result.elements[-1].suggested_type != StructuralType.POST_CREDITS_SCENE
