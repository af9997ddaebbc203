"""SMPTE 标记生成：按固定标签表为结构元素输出首/末帧标记，最后统一按时间排序。"""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from vidstruct.core import Frame, Scene, SmpteMarker, StructuralElement, StructuralType, get_logger
from vidstruct.core.errors import FrameNotFoundError, UnknownMarkerLabelError

logger = get_logger(__name__)

T = StructuralType

LABEL_TABLE: Dict[str, str] = {
    "FFBT": "First Frame of Bars and Tone",
    "LFBT": "Last Frame of Bars and Tone",
    "FFCB": "First Frame of Commercial Blacks",
    "LFCB": "Last Frame of Commercial Blacks",
    "FFHS": "First Frame of Head Slate",
    "LFHS": "Last Frame of Head Slate",
    "FFCL": "First Frame of Company Logo",
    "LFCL": "Last Frame of Company Logo",
    "FFOB": "First Frame of Ratings Band",
    "LFOB": "Last Frame of Ratings Band",
    "FTXM": "First Frame of Textless Material",
    "LTXM": "Last Frame of Textless Material",
    "FPCI": "Fixed Point Candidate Insertion",
    "FFER": "First Frame of Episode Recap",
    "LFER": "Last Frame of Episode Recap",
    "FFTC": "First Frame of Title Credits",
    "LFTC": "Last Frame of Title Credits",
    "FFEC": "First Frame of End Credits",
    "LFEC": "Last Frame of End Credits",
    "FFUN": "First Frame of Up Next",
    "LFUN": "Last Frame of Up Next",
    "FFOC": "First Frame of Composition",
    "LFOC": "Last Frame of Composition",
}

# 结构元素类型 -> (首帧标签, 末帧标签)；末帧为 None 表示单点标记
ELEMENT_LABELS: Dict[StructuralType, Tuple[str, Optional[str]]] = {
    T.COLOR_BARS: ("FFBT", "LFBT"),
    T.BLACK_FRAMES: ("FFCB", "LFCB"),
    T.TECHNICAL_SLATE: ("FFHS", "LFHS"),
    T.IDENTS: ("FFCL", "LFCL"),
    T.RATING: ("FFOB", "LFOB"),
    T.TEXTLESS_ELEMENT: ("FTXM", "LTXM"),
    T.TRANSITION: ("FPCI", None),
}

COMPOSITION_START = (T.OPENING_CREDITS, T.RECAP, T.INTRO, T.PROGRAMME, T.RATING, T.TITLE, T.TRANSITION)
COMPOSITION_END = (T.END_CREDITS, T.NEXT_EPISODE_CREDITS, T.PROGRAMME)


def lookup_label(label: str) -> str:
    try:
        return LABEL_TABLE[label]
    except KeyError as exc:
        raise UnknownMarkerLabelError(f"未知 SMPTE 标签: {label}") from exc


def make_marker(
    label: str,
    marker_type: StructuralType,
    scenes: Sequence[Scene],
    frame_map: Mapping[int, Frame],
    *,
    use_last_frame: bool = False,
) -> SmpteMarker:
    desc = lookup_label(label)
    frame_num = scenes[-1].frame_range[1] if use_last_frame else scenes[0].frame_range[0]
    frame = frame_map.get(frame_num)
    if frame is None:
        raise FrameNotFoundError(f"Fail to find Frame#{frame_num}")
    return SmpteMarker(
        label=label,
        type=marker_type,
        frame_num=frame.frame_num,
        smpte_timecode=frame.smpte_timecode,
        timestamp_millis=frame.timestamp_millis,
        desc=desc,
    )


def _pair(
    first: str,
    last: str,
    marker_type: StructuralType,
    scenes: Sequence[Scene],
    frame_map: Mapping[int, Frame],
) -> List[SmpteMarker]:
    if not scenes:
        return []
    ordered = sorted(scenes, key=lambda scene: scene.scene_id)
    return [
        make_marker(first, marker_type, ordered, frame_map),
        make_marker(last, marker_type, ordered, frame_map, use_last_frame=True),
    ]


def _scenes_in_group(scenes: Sequence[Scene], group: StructuralType) -> List[Scene]:
    return [scene for scene in scenes if scene.segment_type_group == group]


def _opening_scenes(scenes: Sequence[Scene]) -> List[Scene]:
    """片头字幕与标题合并计算，只看第一个节目场景之前的部分。"""

    opening: List[Scene] = []
    for scene in scenes:
        if scene.segment_type_group in (T.OPENING_CREDITS, T.TITLE):
            opening.append(scene)
        if scene.segment_type_group == T.PROGRAMME:
            break
    return opening


def _composition_markers(elements: Sequence[StructuralElement], frame_map: Mapping[int, Frame]) -> List[SmpteMarker]:
    candidates = [element for element in elements if element.scenes]
    first = next((el for el in candidates if el.effective_type in COMPOSITION_START), None)
    if first is None:
        return []
    reversed_order = sorted(candidates, key=lambda el: el.timestamp_range[0], reverse=True)
    last = next((el for el in reversed_order if el.effective_type in COMPOSITION_END), None)
    if last is None:
        return []
    return [
        make_marker("FFOC", first.effective_type, first.scenes, frame_map),
        make_marker("LFOC", last.effective_type, last.scenes, frame_map, use_last_frame=True),
    ]


def _element_markers(element: StructuralElement, frame_map: Mapping[int, Frame]) -> List[SmpteMarker]:
    if not element.scenes:
        return []
    labels = ELEMENT_LABELS.get(element.effective_type)
    if labels is None:
        return []
    first, last = labels
    markers = [make_marker(first, element.effective_type, element.scenes, frame_map)]
    if last is not None:
        markers.append(make_marker(last, element.effective_type, element.scenes, frame_map, use_last_frame=True))
    return markers


def generate_smpte_markers(
    scenes: Sequence[Scene],
    elements: Sequence[StructuralElement],
    frame_map: Mapping[int, Frame],
) -> List[SmpteMarker]:
    markers: List[SmpteMarker] = []
    markers += _pair("FFER", "LFER", T.RECAP, _scenes_in_group(scenes, T.RECAP), frame_map)
    markers += _pair("FFTC", "LFTC", T.OPENING_CREDITS, _opening_scenes(scenes), frame_map)
    markers += _pair("FFEC", "LFEC", T.END_CREDITS, _scenes_in_group(scenes, T.END_CREDITS), frame_map)
    markers += _pair(
        "FFUN", "LFUN", T.NEXT_EPISODE_CREDITS, _scenes_in_group(scenes, T.NEXT_EPISODE_CREDITS), frame_map
    )
    markers += _composition_markers(elements, frame_map)
    for element in elements:
        markers += _element_markers(element, frame_map)

    # 稳定排序，时间相同的标记保持生成顺序
    markers.sort(key=lambda marker: marker.timestamp_millis)
    logger.info("Generated %d SMPTE markers", len(markers))
    return markers


def smpte_document(program_name: Optional[str], markers: Sequence[SmpteMarker]) -> Dict[str, Any]:
    return {
        "programName": program_name,
        "smpteElements": [marker.to_dict() for marker in markers],
    }


def load_smpte_markers(payload: Mapping[str, Any]) -> List[SmpteMarker]:
    markers = [SmpteMarker.from_dict(item) for item in payload.get("smpteElements", [])]
    for marker in markers:
        lookup_label(marker.label)
    return markers
