"""核心模块入口，聚合数据模型、配置、错误与存储工具供各步骤复用。"""

from .datamodels import (
    AdBreakCandidate,
    DialogueGroup,
    Frame,
    KeyElement,
    KnownType,
    LoudnessGroup,
    LoudnessTag,
    ProgramStructure,
    Scene,
    Shot,
    SmpteMarker,
    StructuralElement,
    StructuralType,
)
from .config import PipelineConfig, load_config
from .errors import VidStructError
from .logging_utils import get_logger, setup_logging
from .paths import resolve_storage_root
from .storage import DocumentStore

__all__ = [
    "AdBreakCandidate",
    "DialogueGroup",
    "Frame",
    "KeyElement",
    "KnownType",
    "LoudnessGroup",
    "LoudnessTag",
    "ProgramStructure",
    "Scene",
    "Shot",
    "SmpteMarker",
    "StructuralElement",
    "StructuralType",
    "PipelineConfig",
    "load_config",
    "VidStructError",
    "get_logger",
    "setup_logging",
    "resolve_storage_root",
    "DocumentStore",
]
