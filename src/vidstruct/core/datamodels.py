"""核心数据结构：帧、镜头、场景、结构元素、SMPTE 标记与广告插入点。

所有实体保持 JSON 友好，``to_dict``/``from_dict`` 使用 camelCase 字段名，
反序列化时拒绝未知字段，避免上游随意改变文档结构。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Type, TypeVar

import numpy as np
from numpy.typing import NDArray

from .errors import DocumentFormatError

Range = Tuple[int, int]
E = TypeVar("E", bound=Enum)


class KnownType(str, Enum):
    """确定性视觉检测器给出的帧类型。"""

    BLACK_FRAMES = "BlackFrames"
    MONOCHROME_FRAMES = "MonochromeFrames"
    COLOR_BARS = "ColorBars"


class StructuralType(str, Enum):
    BLACK_FRAMES = "BlackFrames"
    TRANSITION = "Transition"
    TECHNICAL_SLATE = "TechnicalSlate"
    COLOR_BARS = "ColorBars"
    COUNTDOWN_CLOCK = "CountdownClock"
    IDENTS = "Idents"
    RECAP = "Recap"
    INTRO = "Intro"
    OPENING_CREDITS = "OpeningCredits"
    TITLE = "Title"
    PROGRAMME = "Programme"
    RATING = "Rating"
    END_CREDITS = "EndCredits"
    NEXT_EPISODE_CREDITS = "NextEpisodeCredits"
    POST_CREDITS_SCENE = "PostCreditsScene"
    TEXTLESS_ELEMENT = "TextlessElement"
    UNDEFINED = "Undefined"


class LoudnessTag(str, Enum):
    ABSOLUTE_SILENT = "AbsoluteSilent"
    VERY_QUIET = "VeryQuiet"
    QUIET = "Quiet"
    MODERATE = "Moderate"
    LOUD = "Loud"
    VERY_LOUD = "VeryLoud"


# 视为“安静”的响度标签
QUIET_LOUDNESS_TAGS = frozenset({LoudnessTag.ABSOLUTE_SILENT, LoudnessTag.VERY_QUIET})


def _check_keys(data: Mapping[str, Any], allowed: Iterable[str], required: Iterable[str], entity: str) -> None:
    if not isinstance(data, Mapping):
        raise DocumentFormatError(f"{entity} 需为对象，实际为 {type(data).__name__}")
    allowed_set = set(allowed)
    unknown = sorted(set(data) - allowed_set)
    if unknown:
        raise DocumentFormatError(f"{entity} 含未知字段: {unknown}")
    missing = sorted(set(required) - set(data))
    if missing:
        raise DocumentFormatError(f"{entity} 缺少字段: {missing}")


def _enum_or_none(enum_cls: Type[E], value: Any) -> Optional[E]:
    if value is None:
        return None
    try:
        return enum_cls(value)
    except ValueError as exc:
        raise DocumentFormatError(f"未知 {enum_cls.__name__}: {value!r}") from exc


def _enum_value(value: Optional[Enum]) -> Optional[str]:
    return value.value if value is not None else None


def _to_range(values: Sequence[Any]) -> Range:
    if len(values) != 2:
        raise DocumentFormatError(f"区间需为两个元素: {values!r}")
    return int(values[0]), int(values[1])


def _to_str_pair(values: Sequence[Any]) -> Tuple[str, str]:
    if len(values) != 2:
        raise DocumentFormatError(f"时间码区间需为两个元素: {values!r}")
    return str(values[0]), str(values[1])


@dataclass(slots=True, eq=False)
class Frame:
    """采样帧。``hash_distance``/``embed_similarity`` 描述本帧与下一帧的差异。"""

    frame_num: int
    timestamp_millis: int
    smpte_timecode: str
    embedding: NDArray[np.float32]
    hash: Optional[str] = None
    laplacian: float = 0.0
    known_type: Optional[KnownType] = None
    loudness_level: Optional[LoudnessTag] = None
    pause_in_dialogue: Optional[bool] = None
    name: Optional[str] = None
    hash_distance: Optional[float] = None
    embed_similarity: Optional[float] = None
    dirty: bool = False

    _KEYS = (
        "frameNum", "timestampMillis", "smpteTimecode", "embedding", "hash", "laplacian",
        "knownType", "loudnessLevel", "pauseInDialogue", "name", "hashDistance", "embedSimilarity",
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "frameNum": self.frame_num,
            "timestampMillis": self.timestamp_millis,
            "smpteTimecode": self.smpte_timecode,
            "embedding": [float(x) for x in np.asarray(self.embedding).tolist()],
            "hash": self.hash,
            "laplacian": self.laplacian,
            "knownType": _enum_value(self.known_type),
            "loudnessLevel": _enum_value(self.loudness_level),
            "pauseInDialogue": self.pause_in_dialogue,
            "name": self.name,
            "hashDistance": self.hash_distance,
            "embedSimilarity": self.embed_similarity,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Frame":
        _check_keys(data, cls._KEYS, ("frameNum", "timestampMillis", "embedding"), "Frame")
        pause = data.get("pauseInDialogue")
        return cls(
            frame_num=int(data["frameNum"]),
            timestamp_millis=int(data["timestampMillis"]),
            smpte_timecode=str(data.get("smpteTimecode") or ""),
            embedding=np.asarray(data["embedding"], dtype=np.float32),
            hash=data.get("hash"),
            laplacian=float(data.get("laplacian") or 0.0),
            known_type=_enum_or_none(KnownType, data.get("knownType")),
            loudness_level=_enum_or_none(LoudnessTag, data.get("loudnessLevel")),
            pause_in_dialogue=None if pause is None else bool(pause),
            name=data.get("name"),
            hash_distance=None if data.get("hashDistance") is None else float(data["hashDistance"]),
            embed_similarity=None if data.get("embedSimilarity") is None else float(data["embedSimilarity"]),
        )


@dataclass(slots=True, eq=False)
class Shot:
    """连续且高度相似的帧序列。持久化时不携带帧明细。"""

    shot_id: int
    frame_range: Range
    timestamp_range: Range
    smpte_timecodes: Tuple[str, str] = ("", "")
    known_type: Optional[KnownType] = None
    loudness_level: Optional[LoudnessTag] = None
    pause_in_dialogue: Optional[bool] = None
    pause_duration: Optional[int] = None
    frames: List[Frame] = field(default_factory=list)

    _KEYS = (
        "shotId", "frameRange", "timestampRange", "smpteTimecodes", "knownType",
        "loudnessLevel", "pauseInDialogue", "pauseDuration",
    )

    @classmethod
    def from_frames(cls, shot_id: int, frames: Sequence[Frame], known_type: Optional[KnownType] = None) -> "Shot":
        first, last = frames[0], frames[-1]
        return cls(
            shot_id=shot_id,
            frame_range=(first.frame_num, last.frame_num),
            timestamp_range=(first.timestamp_millis, last.timestamp_millis),
            smpte_timecodes=(first.smpte_timecode, last.smpte_timecode),
            known_type=known_type,
            frames=list(frames),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "shotId": self.shot_id,
            "frameRange": list(self.frame_range),
            "timestampRange": list(self.timestamp_range),
            "smpteTimecodes": list(self.smpte_timecodes),
            "knownType": _enum_value(self.known_type),
            "loudnessLevel": _enum_value(self.loudness_level),
            "pauseInDialogue": self.pause_in_dialogue,
            "pauseDuration": self.pause_duration,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Shot":
        _check_keys(data, cls._KEYS, ("shotId", "frameRange", "timestampRange"), "Shot")
        return cls(
            shot_id=int(data["shotId"]),
            frame_range=_to_range(data["frameRange"]),
            timestamp_range=_to_range(data["timestampRange"]),
            smpte_timecodes=_to_str_pair(data.get("smpteTimecodes") or ("", "")),
            known_type=_enum_or_none(KnownType, data.get("knownType")),
            loudness_level=_enum_or_none(LoudnessTag, data.get("loudnessLevel")),
            pause_in_dialogue=data.get("pauseInDialogue"),
            pause_duration=data.get("pauseDuration"),
        )


@dataclass(slots=True)
class KeyElement:
    """外部语义分析识别出的一段结构元素。"""

    key_element: str
    start: int
    end: int
    sequence_type: StructuralType
    reasoning: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "keyElement": self.key_element,
            "start": self.start,
            "end": self.end,
            "sequenceType": self.sequence_type.value,
            "reasoning": self.reasoning,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "KeyElement":
        _check_keys(data, ("keyElement", "start", "end", "sequenceType", "reasoning"), ("start", "end", "sequenceType"), "KeyElement")
        return cls(
            key_element=str(data.get("keyElement", "")),
            start=int(data["start"]),
            end=int(data["end"]),
            sequence_type=StructuralType(data["sequenceType"]),
            reasoning=str(data.get("reasoning", "")),
        )


@dataclass(slots=True)
class ProgramStructure:
    """节目结构分析结果：节目名 + 关键元素列表。"""

    program_name: str
    key_elements: List[KeyElement] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "programName": self.program_name,
            "listOfKeyElements": [item.to_dict() for item in self.key_elements],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ProgramStructure":
        _check_keys(data, ("programName", "listOfKeyElements"), ("programName",), "ProgramStructure")
        return cls(
            program_name=str(data["programName"]),
            key_elements=[KeyElement.from_dict(item) for item in data.get("listOfKeyElements", [])],
        )


@dataclass(slots=True, eq=False)
class Scene:
    """由连续镜头组成的场景，附带相似度诊断与结构类型标注。"""

    scene_id: int
    shot_range: Range
    frame_range: Range
    timestamp_range: Range
    smpte_timecodes: Tuple[str, str] = ("", "")
    shots: List[Shot] = field(default_factory=list)
    known_type: Optional[KnownType] = None
    loudness_level: Optional[LoudnessTag] = None
    pause_in_dialogue: Optional[bool] = None
    pause_duration: Optional[int] = None
    transcripts: List[str] = field(default_factory=list)
    description: Optional[str] = None
    sequence_type: Optional[StructuralType] = None
    segment_type: Optional[StructuralType] = None
    segment_type_group: Optional[StructuralType] = None
    sim_to_previous_frame: Optional[float] = None
    sim_to_previous_scene: Optional[Tuple[float, float, float]] = None
    sim_to_all_scenes: Optional[float] = None
    program_structure: Optional[ProgramStructure] = None

    _KEYS = (
        "sceneId", "shotRange", "frameRange", "timestampRange", "smpteTimecodes", "shots",
        "knownType", "loudnessLevel", "pauseInDialogue", "pauseDuration", "transcripts",
        "description", "sequenceType", "segmentType", "segmentTypeGroup", "simToPreviousFrame",
        "simToPreviousScene", "simToAllScenes", "programStructureResponse",
    )

    @property
    def frames(self) -> List[Frame]:
        collected: List[Frame] = []
        for shot in self.shots:
            collected.extend(shot.frames)
        return collected

    @property
    def has_dialogue(self) -> bool:
        return len(self.transcripts) > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sceneId": self.scene_id,
            "shotRange": list(self.shot_range),
            "frameRange": list(self.frame_range),
            "timestampRange": list(self.timestamp_range),
            "smpteTimecodes": list(self.smpte_timecodes),
            "shots": [shot.to_dict() for shot in self.shots],
            "knownType": _enum_value(self.known_type),
            "loudnessLevel": _enum_value(self.loudness_level),
            "pauseInDialogue": self.pause_in_dialogue,
            "pauseDuration": self.pause_duration,
            "transcripts": list(self.transcripts),
            "description": self.description,
            "sequenceType": _enum_value(self.sequence_type),
            "segmentType": _enum_value(self.segment_type),
            "segmentTypeGroup": _enum_value(self.segment_type_group),
            "simToPreviousFrame": self.sim_to_previous_frame,
            "simToPreviousScene": list(self.sim_to_previous_scene) if self.sim_to_previous_scene else None,
            "simToAllScenes": self.sim_to_all_scenes,
            "programStructureResponse": self.program_structure.to_dict() if self.program_structure else None,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Scene":
        _check_keys(data, cls._KEYS, ("sceneId", "shotRange", "frameRange", "timestampRange"), "Scene")
        prev_scene = data.get("simToPreviousScene")
        structure = data.get("programStructureResponse")
        return cls(
            scene_id=int(data["sceneId"]),
            shot_range=_to_range(data["shotRange"]),
            frame_range=_to_range(data["frameRange"]),
            timestamp_range=_to_range(data["timestampRange"]),
            smpte_timecodes=_to_str_pair(data.get("smpteTimecodes") or ("", "")),
            shots=[Shot.from_dict(item) for item in data.get("shots", [])],
            known_type=_enum_or_none(KnownType, data.get("knownType")),
            loudness_level=_enum_or_none(LoudnessTag, data.get("loudnessLevel")),
            pause_in_dialogue=data.get("pauseInDialogue"),
            pause_duration=data.get("pauseDuration"),
            transcripts=[str(x) for x in data.get("transcripts") or []],
            description=data.get("description"),
            sequence_type=_enum_or_none(StructuralType, data.get("sequenceType")),
            segment_type=_enum_or_none(StructuralType, data.get("segmentType")),
            segment_type_group=_enum_or_none(StructuralType, data.get("segmentTypeGroup")),
            sim_to_previous_frame=data.get("simToPreviousFrame"),
            sim_to_previous_scene=tuple(float(x) for x in prev_scene) if prev_scene else None,  # type: ignore[arg-type]
            sim_to_all_scenes=data.get("simToAllScenes"),
            program_structure=ProgramStructure.from_dict(structure) if structure else None,
        )


@dataclass(slots=True, eq=False)
class StructuralElement:
    """相同 ``segment_type_group`` 的连续场景。被降级时保留原类型供审计。"""

    type: StructuralType
    timestamp_range: Range
    scenes: List[Scene] = field(default_factory=list)
    misclassified: bool = False
    suggested_type: Optional[StructuralType] = None
    synthetic: bool = False

    @property
    def effective_type(self) -> StructuralType:
        return self.suggested_type if self.suggested_type is not None else self.type

    def to_dict(self) -> Dict[str, Any]:
        scene_range = [self.scenes[0].scene_id, self.scenes[-1].scene_id] if self.scenes else None
        return {
            "type": self.type.value,
            "timestampRange": list(self.timestamp_range),
            "sceneRange": scene_range,
            "misclassified": self.misclassified,
            "suggestedType": _enum_value(self.suggested_type),
            "synthetic": self.synthetic,
        }


@dataclass(slots=True)
class SmpteMarker:
    label: str
    type: StructuralType
    frame_num: int
    smpte_timecode: str
    timestamp_millis: int
    desc: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "label": self.label,
            "type": self.type.value,
            "desc": self.desc,
            "frameNum": self.frame_num,
            "smpteTimecode": self.smpte_timecode,
            "timestampMillis": self.timestamp_millis,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SmpteMarker":
        _check_keys(
            data,
            ("label", "type", "desc", "frameNum", "smpteTimecode", "timestampMillis"),
            ("label", "type", "frameNum", "timestampMillis"),
            "SmpteMarker",
        )
        return cls(
            label=str(data["label"]),
            type=StructuralType(data["type"]),
            frame_num=int(data["frameNum"]),
            smpte_timecode=str(data.get("smpteTimecode") or ""),
            timestamp_millis=int(data["timestampMillis"]),
            desc=str(data.get("desc") or ""),
        )


@dataclass(slots=True)
class LoudnessGroup:
    """响度分组：标签、时间区间与 [min, max, mean] LUFS。"""

    label: LoudnessTag
    timestamp_range: Range
    min_max_mean: Tuple[float, float, float]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "label": self.label.value,
            "timestampRange": list(self.timestamp_range),
            "minMaxMean": list(self.min_max_mean),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "LoudnessGroup":
        _check_keys(data, ("label", "timestampRange", "minMaxMean"), ("label", "timestampRange"), "LoudnessGroup")
        values = data.get("minMaxMean") or (0.0, 0.0, 0.0)
        return cls(
            label=LoudnessTag(data["label"]),
            timestamp_range=_to_range(data["timestampRange"]),
            min_max_mean=(float(values[0]), float(values[1]), float(values[2])),
        )


@dataclass(slots=True)
class Transcript:
    start: int
    end: int
    text: str

    def to_dict(self) -> Dict[str, Any]:
        return {"start": self.start, "end": self.end, "text": self.text}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Transcript":
        _check_keys(data, ("start", "end", "text"), ("start", "end", "text"), "Transcript")
        return cls(start=int(data["start"]), end=int(data["end"]), text=str(data["text"]))


@dataclass(slots=True)
class DialogueGroup:
    """说话人分段后的一段连续对白，可附带语义分析给出的 ``sequence_type``。"""

    timestamp_range: Range
    transcripts: List[Transcript] = field(default_factory=list)
    sequence_type: Optional[StructuralType] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestampRange": list(self.timestamp_range),
            "transcripts": [item.to_dict() for item in self.transcripts],
            "sequenceType": _enum_value(self.sequence_type),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "DialogueGroup":
        _check_keys(data, ("timestampRange", "transcripts", "sequenceType"), ("timestampRange",), "DialogueGroup")
        return cls(
            timestamp_range=_to_range(data["timestampRange"]),
            transcripts=[Transcript.from_dict(item) for item in data.get("transcripts") or []],
            sequence_type=_enum_or_none(StructuralType, data.get("sequenceType")),
        )


@dataclass(slots=True, eq=False)
class AdBreakCandidate:
    """广告插入候选点。``ranking`` 为派生字段，可随时重算。"""

    scene_id: int
    timestamp_range: Range
    frame_range: Range
    shot_range: Range
    weight: float
    reason: str
    chosen_sim: float = 0.0
    smpte_timecodes: Tuple[str, str] = ("", "")
    known_type: Optional[KnownType] = None
    segment_type: Optional[StructuralType] = None
    technical_cue_type: str = "Content"
    loudness: Optional[LoudnessGroup] = None
    pause: Optional[Range] = None
    key: Optional[str] = None
    ranking: Optional[int] = None
    break_no: Optional[int] = None

    @property
    def timestamp(self) -> int:
        return self.timestamp_range[0]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "breakType": "SCENE_BEGIN",
            "breakNo": self.break_no,
            "timestamp": self.timestamp,
            "smpteTimestamp": self.smpte_timecodes[0],
            "weight": self.weight,
            "reason": self.reason,
            "chosenSim": self.chosen_sim,
            "key": self.key,
            "ranking": self.ranking,
            "loudnessProps": self.loudness.to_dict() if self.loudness else None,
            "pause": list(self.pause) if self.pause else None,
            "scene": {
                "sceneNo": self.scene_id,
                "shotStart": self.shot_range[0],
                "shotEnd": self.shot_range[1],
                "frameStart": self.frame_range[0],
                "frameEnd": self.frame_range[1],
                "timeStart": self.timestamp_range[0],
                "timeEnd": self.timestamp_range[1],
                "smpteStart": self.smpte_timecodes[0],
                "smpteEnd": self.smpte_timecodes[1],
                "duration": self.timestamp_range[1] - self.timestamp_range[0],
                "knownType": _enum_value(self.known_type),
                "segmentType": _enum_value(self.segment_type),
                "technicalCueType": self.technical_cue_type,
            },
        }
