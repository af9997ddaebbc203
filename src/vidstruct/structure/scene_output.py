"""场景输出文档：结构元素按场景号铺满全片，并映射为技术提示类型。"""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from vidstruct.core import Frame, Scene, StructuralElement, StructuralType, VidStructError, get_logger
from vidstruct.core.errors import EmptyInputError, FrameNotFoundError

logger = get_logger(__name__)

T = StructuralType

TECHNICAL_CUE_TYPES: Dict[StructuralType, str] = {
    T.COLOR_BARS: "ColorBars",
    T.BLACK_FRAMES: "BlackFrames",
    T.OPENING_CREDITS: "OpeningCredits",
    T.END_CREDITS: "EndCredits",
    T.TECHNICAL_SLATE: "Slate",
    T.IDENTS: "StudioLogo",
}
CONTENT_CUE_TYPE = "Content"

_CREDITS = (T.OPENING_CREDITS, T.END_CREDITS)


def technical_cue_type(structural_type: Optional[StructuralType]) -> str:
    if structural_type is None:
        return CONTENT_CUE_TYPE
    return TECHNICAL_CUE_TYPES.get(structural_type, CONTENT_CUE_TYPE)


def _scene_groups(elements: Sequence[StructuralElement], last_scene_id: int) -> List[Tuple[StructuralType, int, int]]:
    """把元素展开为场景号区间，首尾及中间空缺补 Programme。"""

    groups: List[Tuple[StructuralType, int, int]] = []
    for element in elements:
        if not element.scenes:
            continue
        start = element.scenes[0].scene_id
        end = element.scenes[-1].scene_id
        prev_end = groups[-1][2] if groups else -1
        if start - prev_end > 1:
            groups.append((T.PROGRAMME, prev_end + 1, start - 1))
        groups.append((element.effective_type, start, end))

    if groups and groups[-1][2] < last_scene_id:
        groups.append((T.PROGRAMME, groups[-1][2] + 1, last_scene_id))

    for prev, cur in zip(groups, groups[1:]):
        if cur[1] - prev[2] != 1:
            raise VidStructError(f"场景区间不连续: {prev} -> {cur}")
    return groups


def _frame_name(frame_map: Mapping[int, Frame], frame_num: int) -> Optional[str]:
    frame = frame_map.get(frame_num)
    if frame is None:
        raise FrameNotFoundError(f"Fail to find Frame#{frame_num}")
    return frame.name


def build_scene_output(
    elements: Sequence[StructuralElement],
    scenes: Sequence[Scene],
    frame_map: Mapping[int, Frame],
) -> List[Dict[str, Any]]:
    if not any(element.scenes for element in elements) or not scenes:
        raise EmptyInputError("structural elements is empty")

    scene_map = {scene.scene_id: scene for scene in scenes}
    entries: List[Dict[str, Any]] = []
    for group_type, start_id, end_id in _scene_groups(elements, scenes[-1].scene_id):
        scene_start = scene_map[start_id]
        scene_end = scene_map[end_id]

        # 片头/片尾字幕以场景自身的分组类型为准，黑场除外
        cue_source = group_type
        if scene_start.segment_type_group in _CREDITS and group_type != T.BLACK_FRAMES:
            cue_source = scene_start.segment_type_group

        frame_start = scene_start.frame_range[0]
        frame_end = scene_end.frame_range[1]
        entries.append(
            {
                "sceneNo": len(entries),
                "sceneRange": [start_id, end_id],
                "type": group_type.value,
                "shotStart": scene_start.shot_range[0],
                "frameStart": frame_start,
                "timeStart": scene_start.timestamp_range[0],
                "smpteStart": scene_start.smpte_timecodes[0],
                "keyStart": _frame_name(frame_map, frame_start),
                "shotEnd": scene_end.shot_range[1],
                "frameEnd": frame_end,
                "timeEnd": scene_end.timestamp_range[1],
                "smpteEnd": scene_end.smpte_timecodes[1],
                "keyEnd": _frame_name(frame_map, frame_end),
                "duration": scene_end.timestamp_range[1] - scene_start.timestamp_range[0],
                "technicalCueType": technical_cue_type(cue_source),
            }
        )
    logger.info("Scene output: %d entries", len(entries))
    return entries


def scene_output_document(frame_prefix: str, entries: Sequence[Dict[str, Any]]) -> Dict[str, Any]:
    return {"framePrefix": frame_prefix, "scene": list(entries)}
