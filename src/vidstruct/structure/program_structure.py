"""节目结构分析适配层：把场景描述拼成 WebVTT 交给外部分析服务，并校验其返回。

外部服务本身不在本包范围内，这里只约定 ``SceneAnalyzer.analyze`` 的输入输出形状。
分析缺失（没有 analyzer、服务不可用、返回无法解析）都只记录告警，分类器继续走启发式路径。
"""

from __future__ import annotations

from typing import Any, List, Mapping, Optional, Protocol, Sequence, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from vidstruct.core import KeyElement, ProgramStructure, Scene, StructuralType, get_logger
from vidstruct.core.errors import AnalysisUnavailableError

logger = get_logger(__name__)

DESCRIPTIONS_PLACEHOLDER = "{{descriptions}}"

DEFAULT_PROMPT_TEMPLATE = """
## Definitions
In TV and movie content, typical elements include:
1. **Rating Band**: appears at the BEGINNING and presents TV or MPAA rating labels such as TV-MA, PG-13.
2. **Opening Credits**: appears at the BEGINNING and lists the key people involved in the production.
3. **End Credits**: appears near the END, usually white text on a black or dark background.
4. **Title Sequence**: a visual introduction that includes the title of the film or show.
5. **Scene Transitions**: visual effects between scenes, such as fades, cuts or wipes.
6. **Studio Bumpers**: the logo of a production company shown briefly at the BEGINNING.
7. **Program**: the main content of the program or show.

## Task
Given a list of video scene descriptions in WebVTT format, identify the key elements of the content.

### Video Scene Description
{{descriptions}}

## Instructions
1. Read the ENTIRE Video Scene Description before answering.
2. Determine the program name.
3. For each key element provide start and end timestamps that MUST match the WebVTT cues, and a reasoning of NO MORE THAN 40 words.

### Response Example
{
  "program_name": "Program name, or empty string if not present",
  "list_of_key_elements": [
    {
      "key_element": "Name of the key element",
      "start_time": "00:00:00.000",
      "end_time": "00:10:10.100",
      "reasoning": "Reason, NO MORE THAN 40 words"
    }
  ]
}

Provide your response immediately in the JSON format above without any preamble:
"""

# 按前缀匹配，顺序即优先级
KEYWORD_TYPES: Tuple[Tuple[str, StructuralType], ...] = (
    ("end", StructuralType.END_CREDITS),
    ("open", StructuralType.OPENING_CREDITS),
    ("title", StructuralType.TITLE),
    ("rating", StructuralType.RATING),
    ("program", StructuralType.PROGRAMME),
    ("scene", StructuralType.TRANSITION),
    ("studio", StructuralType.IDENTS),
)

MIN_CUE_DURATION_MS = 100


class SceneAnalyzer(Protocol):
    """外部语义分析服务：输入 WebVTT 场景描述与提示模板，返回原始 JSON。

    实现方用 ``render_prompt(prompt_template, descriptions)`` 得到最终提示词。
    服务不可用时抛 ``AnalysisUnavailableError``。
    """

    def analyze(self, descriptions: str, prompt_template: str) -> Mapping[str, Any]:
        ...


class PrecomputedAnalyzer:
    """直接返回事先保存的分析结果，用于离线重放与 CLI。

    ``last_prompt`` 保存本应发送给分析服务的提示词，便于核对重放输入。
    """

    def __init__(self, payload: Mapping[str, Any]) -> None:
        self.payload = payload
        self.last_prompt: Optional[str] = None

    def analyze(self, descriptions: str, prompt_template: str) -> Mapping[str, Any]:
        self.last_prompt = render_prompt(prompt_template, descriptions)
        return self.payload


class KeyElementPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    key_element: str
    start_time: str
    end_time: str
    reasoning: str = ""


class ProgramStructurePayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    program_name: str = ""
    list_of_key_elements: List[Any] = Field(default_factory=list)


def format_vtt_timestamp(millis: int) -> str:
    millis = max(0, int(millis))
    seconds, ms = divmod(millis, 1000)
    minutes, s = divmod(seconds, 60)
    h, m = divmod(minutes, 60)
    return f"{h:02d}:{m:02d}:{s:02d}.{ms:03d}"


def parse_timestamp(value: str) -> int:
    """解析 ``HH:MM:SS.mmm``（也接受 ``MM:SS.mmm``）为毫秒。"""

    parts = value.strip().split(":")
    if not 1 <= len(parts) <= 3:
        raise ValueError(f"无法解析时间戳: {value!r}")
    seconds = float(parts[-1])
    minutes = int(parts[-2]) if len(parts) >= 2 else 0
    hours = int(parts[-3]) if len(parts) == 3 else 0
    return int(round(((hours * 60 + minutes) * 60 + seconds) * 1000))


def keyword_to_type(key_element: str) -> StructuralType:
    lowercase = key_element.strip().lower()
    for keyword, structural_type in KEYWORD_TYPES:
        if lowercase.startswith(keyword):
            return structural_type
    return StructuralType.UNDEFINED


def build_scene_descriptions(scenes: Sequence[Scene]) -> str:
    """每个场景一条 WebVTT cue，文本为场景描述。"""

    out: List[str] = ["WEBVTT", ""]
    for idx, scene in enumerate(scenes, start=1):
        start, end = scene.timestamp_range
        if end - start <= 0:
            end = start + MIN_CUE_DURATION_MS
        out.append(str(idx))
        out.append(f"{format_vtt_timestamp(start)} --> {format_vtt_timestamp(end)}")
        out.append((scene.description or "").strip() or "No info")
        out.append("")
    return "\n".join(out).strip() + "\n"


def render_prompt(template: str, descriptions: str) -> str:
    """把场景描述填入模板的 ``{{descriptions}}`` 占位符；没有占位符时追加到末尾。"""

    if DESCRIPTIONS_PLACEHOLDER not in template:
        logger.warning("Prompt template has no %s placeholder, appending descriptions", DESCRIPTIONS_PLACEHOLDER)
        return f"{template}\n{descriptions}"
    return template.replace(DESCRIPTIONS_PLACEHOLDER, descriptions, 1)


def parse_analysis_response(payload: Mapping[str, Any]) -> ProgramStructure:
    """校验外部返回；单个元素字段不合法时跳过该元素而不是整体失败。"""

    parsed = ProgramStructurePayload.model_validate(payload)
    elements: List[KeyElement] = []
    for raw in parsed.list_of_key_elements:
        try:
            item = KeyElementPayload.model_validate(raw)
            start = parse_timestamp(item.start_time)
            end = parse_timestamp(item.end_time)
        except (ValidationError, ValueError) as exc:
            logger.warning("Skip malformed key element %r: %s", raw, exc)
            continue
        elements.append(
            KeyElement(
                key_element=item.key_element,
                start=start,
                end=end,
                sequence_type=keyword_to_type(item.key_element),
                reasoning=item.reasoning,
            )
        )
    program_name = parsed.program_name.strip() or StructuralType.UNDEFINED.value
    return ProgramStructure(program_name=program_name, key_elements=elements)


def identify_program_structure(
    scenes: Sequence[Scene],
    analyzer: Optional[SceneAnalyzer],
    prompt_template: Optional[str] = None,
) -> Optional[ProgramStructure]:
    """调用外部分析并把结果挂到第一个场景上；已有结果时直接复用。"""

    if not scenes:
        return None
    cached = scenes[0].program_structure
    if cached is not None:
        return cached
    if analyzer is None:
        logger.warning("No scene analyzer configured, skip program structure analysis")
        return None

    descriptions = build_scene_descriptions(scenes)
    template = prompt_template or DEFAULT_PROMPT_TEMPLATE
    try:
        payload = analyzer.analyze(descriptions, template)
    except AnalysisUnavailableError as exc:
        logger.warning("Program structure analysis unavailable: %s", exc)
        return None

    try:
        structure = parse_analysis_response(payload)
    except ValidationError as exc:
        logger.warning("Program structure response rejected: %s", exc)
        return None

    logger.info(
        "Program structure: %s (%d key elements)",
        structure.program_name,
        len(structure.key_elements),
    )
    scenes[0].program_structure = structure
    return structure
