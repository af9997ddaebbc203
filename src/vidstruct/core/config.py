"""配置加载工具，集中管理阈值与运行参数。"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, MutableMapping, Optional, Sequence, Tuple

import yaml
from pydantic import BaseModel, ConfigDict, Field

from .paths import STORAGE_ENV_KEY, resolve_storage_root

CONFIG_ENV_KEY = "VIDSTRUCT_CONFIG_PATH"


class ShotConfig(BaseModel):
    """帧 -> 镜头分组阈值。"""

    min_frame_similarity: float = 0.80
    max_time_distance_ms: int = 3000
    max_hash_distance: float = 0.45


class SceneConfig(BaseModel):
    """镜头 -> 场景分组阈值，比镜头阈值宽松。"""

    min_frame_similarity: float = 0.60
    max_time_distance_ms: int = 10000
    merge_on_continuous_dialogue: bool = True


class RefineConfig(BaseModel):
    """边界细化参数：worker 数量默认取 CPU 核数。"""

    bailout_retries: int = 10
    max_workers: Optional[int] = None
    deadline_margin_ms: int = 500
    buffer_ms: int = 60000
    invocation_budget_ms: int = 15 * 60 * 1000
    refine_shots: bool = False


class ClassifierConfig(BaseModel):
    """结构分类参数。时序校验默认关闭，规则仍在迭代中。"""

    validate_temporal_order: bool = False
    element_gap_tolerance_ms: int = 1000
    prompt_template: Optional[str] = None


class AdBreakConfig(BaseModel):
    """广告插入点搜索参数，单位毫秒。"""

    break_interval_ms: int = 5 * 60 * 1000
    break_offset_ms: int = int(2.5 * 60 * 1000)
    max_similarity: float = 0.70
    pause_padding_ms: int = 100
    audio_lookback_ms: int = 200


class PipelineConfig(BaseModel):
    """聚合各阶段配置，单次运行构造一次并逐层传递。"""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    shot: ShotConfig = Field(default_factory=ShotConfig)
    scene: SceneConfig = Field(default_factory=SceneConfig)
    refine: RefineConfig = Field(default_factory=RefineConfig)
    classifier: ClassifierConfig = Field(default_factory=ClassifierConfig)
    adbreak: AdBreakConfig = Field(default_factory=AdBreakConfig)
    storage_root: Path = Field(default_factory=resolve_storage_root)
    raw: Dict[str, Any] = Field(default_factory=dict, description="原始配置字典，便于调试。")

    def model_post_init(self, __context: Any) -> None:  # type: ignore[override]
        if not self.raw:
            self.raw = self.to_raw_dict()

    def to_raw_dict(self) -> Dict[str, Any]:
        """导出基础 dict，供日志或持久化使用。"""

        return {
            "shot": self.shot.model_dump(),
            "scene": self.scene.model_dump(),
            "refine": self.refine.model_dump(),
            "classifier": self.classifier.model_dump(),
            "adbreak": self.adbreak.model_dump(),
            "storage_root": str(self.storage_root),
        }


def _default_config_path() -> Path:
    return Path(__file__).resolve().parents[3] / "configs" / "baseline.yaml"


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
        if not isinstance(data, dict):
            raise ValueError(f"配置文件 {path} 内容需为字典")
        return data


ENV_OVERRIDE_MAP: Dict[str, Tuple[Sequence[str], Callable[[str], Any]]] = {
    "VIDSTRUCT_SHOT_MIN_SIMILARITY": (("shot", "min_frame_similarity"), float),
    "VIDSTRUCT_SCENE_MIN_SIMILARITY": (("scene", "min_frame_similarity"), float),
    "VIDSTRUCT_BREAK_INTERVAL_MS": (("adbreak", "break_interval_ms"), int),
    "VIDSTRUCT_BREAK_OFFSET_MS": (("adbreak", "break_offset_ms"), int),
    "VIDSTRUCT_REFINE_BAILOUT": (("refine", "bailout_retries"), int),
}


def _apply_env_overrides(data: MutableMapping[str, Any], env: Mapping[str, str]) -> None:
    for env_key, (path, caster) in ENV_OVERRIDE_MAP.items():
        if env_key in env:
            _set_nested_value(data, path, caster(env[env_key]))


def _set_nested_value(target: MutableMapping[str, Any], path: Sequence[str], value: Any) -> None:
    cursor: MutableMapping[str, Any] = target
    *parents, last = path
    for key in parents:
        if key not in cursor or not isinstance(cursor[key], MutableMapping):
            cursor[key] = {}
        cursor = cursor[key]  # type: ignore[assignment]
    cursor[last] = value


def load_config(path: str | Path | None = None, *, env: Mapping[str, str] | None = None) -> PipelineConfig:
    """加载配置：优先显式路径，其次环境变量，最后回退默认 baseline。"""

    env_map = env if env is not None else os.environ
    config_path = path or env_map.get(CONFIG_ENV_KEY)
    target_path = Path(config_path).expanduser() if config_path else _default_config_path()
    data = _load_yaml(target_path)
    _apply_env_overrides(data, env_map)

    storage_override = env_map.get(STORAGE_ENV_KEY)
    if storage_override:
        data["storage_root"] = str(Path(storage_override).expanduser().resolve())

    return PipelineConfig.model_validate({**data, "raw": data})
