"""结构分类、SMPTE 标记与场景输出。"""

from .classifier import (
    classify_scenes,
    group_scenes_by_segment_type,
    is_transition_scene,
    tag_segment_types,
    to_structural_elements,
    validate_temporal_order,
)
from .program_structure import (
    DEFAULT_PROMPT_TEMPLATE,
    PrecomputedAnalyzer,
    SceneAnalyzer,
    build_scene_descriptions,
    identify_program_structure,
    parse_analysis_response,
    render_prompt,
)
from .scene_output import build_scene_output, scene_output_document, technical_cue_type
from .smpte import generate_smpte_markers, load_smpte_markers, lookup_label, smpte_document

__all__ = [
    "DEFAULT_PROMPT_TEMPLATE",
    "PrecomputedAnalyzer",
    "SceneAnalyzer",
    "build_scene_descriptions",
    "build_scene_output",
    "classify_scenes",
    "generate_smpte_markers",
    "group_scenes_by_segment_type",
    "identify_program_structure",
    "is_transition_scene",
    "load_smpte_markers",
    "lookup_label",
    "parse_analysis_response",
    "render_prompt",
    "scene_output_document",
    "smpte_document",
    "tag_segment_types",
    "technical_cue_type",
    "to_structural_elements",
    "validate_temporal_order",
]
