"""广告插入点搜索测试。"""

import pytest

from vidstruct.adbreak import AdBreakSearch, adbreak_document, rank_candidates, search_ad_breaks
from vidstruct.core import KnownType, SmpteMarker, StructuralType
from vidstruct.core.config import AdBreakConfig
from vidstruct.core.errors import UnknownMarkerLabelError
from vidstruct.segment import build_frame_map

T = StructuralType


def marker(label: str, marker_type: StructuralType, frame_num: int, ts: int) -> SmpteMarker:
    return SmpteMarker(label=label, type=marker_type, frame_num=frame_num, smpte_timecode="", timestamp_millis=ts)


@pytest.fixture
def black_window(scene_factory):
    scenes, frames = scene_factory(
        [
            {"segment_type": T.PROGRAMME},
            {"segment_type": T.PROGRAMME},
            {"known_type": KnownType.BLACK_FRAMES},
            {"segment_type": T.PROGRAMME},
            {"segment_type": T.PROGRAMME},
        ]
    )
    return scenes, frames


def test_black_frame_scene_wins_window(black_window) -> None:
    scenes, frames = black_window
    config = AdBreakConfig(break_interval_ms=2000, break_offset_ms=500)

    candidates = search_ad_breaks(scenes, [], build_frame_map(frames), config)

    assert [c.scene_id for c in candidates] == [2]
    best = candidates[0]
    assert best.weight == 1.0
    assert best.reason == "Blackframe scene"
    assert best.technical_cue_type == "BlackFrames"
    assert best.key == "frame0000004.jpg"
    assert (best.ranking, best.break_no) == (0, 0)


def test_marker_and_window_hit_same_scene_once(black_window) -> None:
    scenes, frames = black_window
    config = AdBreakConfig(break_interval_ms=2000, break_offset_ms=500)
    markers = [marker("FFCB", T.BLACK_FRAMES, 4, 2000), marker("LFCB", T.BLACK_FRAMES, 5, 2999)]

    candidates = search_ad_breaks(scenes, markers, build_frame_map(frames), config)
    scene_ids = [c.scene_id for c in candidates]

    assert scene_ids == [2]
    assert len(scene_ids) == len(set(scene_ids))


def test_known_non_black_type(scene_factory) -> None:
    scenes, frames = scene_factory([{}, {"known_type": KnownType.COLOR_BARS}, {}])
    config = AdBreakConfig(break_interval_ms=1500, break_offset_ms=200)

    candidates = search_ad_breaks(scenes, [], build_frame_map(frames), config)

    assert len(candidates) == 1
    assert candidates[0].weight == 0.8
    assert candidates[0].reason == "ColorBars scene"
    assert candidates[0].technical_cue_type == "ColorBars"


@pytest.fixture
def similarity_scenes(scene_factory):
    scenes, frames = scene_factory(
        [
            {"embedding": (1.0, 0.0)},
            {"embedding": (0.0, 1.0), "sim_to_previous_scene": (0.0, 0.0, 0.8), "sim_to_previous_frame": 0.5},
            {"embedding": (1.0, 0.1), "sim_to_previous_scene": (0.1, 0.2, 0.3), "sim_to_previous_frame": 0.6},
        ]
    )
    # 单个窗口 (0, 3500) 覆盖全部三个场景
    config = AdBreakConfig(break_interval_ms=1500, break_offset_ms=2000)
    return scenes, frames, config


def test_similarity_strategies_in_order(similarity_scenes) -> None:
    scenes, frames, config = similarity_scenes

    candidates = search_ad_breaks(scenes, [], build_frame_map(frames), config)

    assert [(c.scene_id, c.weight, c.reason) for c in candidates] == [
        (1, 0.6, "Lowest sim score in range"),
        (2, 0.6, "Lowest sim score to previous scene (rms)"),
    ]
    assert candidates[0].chosen_sim == pytest.approx(0.0995 / 2, abs=1e-3)
    assert candidates[1].chosen_sim == pytest.approx(0.3)
    assert [c.ranking for c in candidates] == [0, 1]


def test_sim_in_range_excludes_self(similarity_scenes) -> None:
    scenes, frames, config = similarity_scenes
    search = AdBreakSearch(scenes, build_frame_map(frames), config)

    values = search.sim_in_range(scenes)

    assert values[0] == pytest.approx((0.0 + 0.995) / 2, abs=1e-3)
    assert search.sim_in_range(scenes[:1]) == [None]


def test_pause_gate_keeps_scenes_starting_in_pause(similarity_scenes) -> None:
    scenes, frames, config = similarity_scenes

    candidates = search_ad_breaks(scenes, [], build_frame_map(frames), config, pauses=[(1950, 2050)])

    assert [c.scene_id for c in candidates] == [2]
    # 只有场景 2 落在停顿中，但其区间相似度仍与窗口内全部场景比较
    assert candidates[0].reason == "Lowest sim score in range"
    assert candidates[0].weight == 0.6
    assert candidates[0].chosen_sim == pytest.approx((0.995 + 0.0995) / 2, abs=1e-3)
    assert candidates[0].pause == (1950, 2050)


def test_pause_gate_does_not_shrink_similarity_set(similarity_scenes) -> None:
    scenes, frames, config = similarity_scenes
    full = AdBreakSearch(scenes, build_frame_map(frames), config).sim_in_range(scenes)

    candidates = search_ad_breaks(scenes, [], build_frame_map(frames), config, pauses=[(950, 1050), (1950, 2050)])

    assert [(c.scene_id, c.reason) for c in candidates] == [
        (1, "Lowest sim score in range"),
        (2, "Lowest sim score to previous scene (rms)"),
    ]
    assert candidates[0].chosen_sim == pytest.approx(full[1])
    assert full[1] == pytest.approx(0.0995 / 2, abs=1e-3)


def test_seed_markers_skip_opening_credits(scene_factory) -> None:
    scenes, frames = scene_factory([{}, {}, {}])
    config = AdBreakConfig(break_interval_ms=100000)
    markers = [
        marker("FFOC", T.OPENING_CREDITS, 0, 0),
        marker("FFTC", T.OPENING_CREDITS, 0, 0),
        marker("FPCI", T.TRANSITION, 2, 1000),
        marker("LFOC", T.PROGRAMME, 5, 2999),
    ]

    candidates = search_ad_breaks(scenes, markers, build_frame_map(frames), config)

    assert [(c.scene_id, c.weight, c.reason) for c in candidates] == [(1, 0.8, "Transition or title scene")]


def test_unknown_marker_label(scene_factory) -> None:
    scenes, frames = scene_factory([{}])

    with pytest.raises(UnknownMarkerLabelError):
        search_ad_breaks(scenes, [marker("NOPE", T.PROGRAMME, 0, 0)], build_frame_map(frames), AdBreakConfig())


def test_ranking_independent_of_output_order(scene_factory) -> None:
    scenes, frames = scene_factory([{}, {"known_type": KnownType.BLACK_FRAMES}, {}])
    search = AdBreakSearch(scenes, build_frame_map(frames), AdBreakConfig())
    low = search._make_candidate(scenes[0], 0.2, "Closest scene to break interval", 0.5)
    high = search._make_candidate(scenes[2], 1.0, "Blackframe scene", 0.0)

    ordered = rank_candidates([high, low])

    assert [c.scene_id for c in ordered] == [0, 2]
    assert [c.ranking for c in ordered] == [1, 0]
    assert [c.break_no for c in ordered] == [0, 1]

    document = adbreak_document("show/ep1", ordered)
    assert document["framePrefix"] == "show/ep1"
    assert document["adbreak"][1]["breakType"] == "SCENE_BEGIN"
    assert document["adbreak"][1]["scene"]["sceneNo"] == 2


def test_no_scenes() -> None:
    assert search_ad_breaks([], [], {}, AdBreakConfig()) == []
