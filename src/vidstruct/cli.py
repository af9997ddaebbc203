"""VidStruct Typer CLI，按阶段读写 DocumentStore 中的 JSON 文档。"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import typer

from vidstruct import pipeline
from vidstruct.core import DocumentStore, PipelineConfig, VidStructError, load_config, setup_logging
from vidstruct.refine import RefineStatus
from vidstruct.structure import PrecomputedAnalyzer, SceneAnalyzer

app = typer.Typer(help="VidStruct 视频结构分析 CLI")


@app.callback()
def main() -> None:
    """VidStruct 顶层 CLI。"""

    return None


def _resolve_config(config_path: Optional[Path], storage_root: Optional[Path]) -> PipelineConfig:
    cfg = load_config(config_path) if config_path else load_config()
    if storage_root is not None:
        cfg = cfg.model_copy(update={"storage_root": storage_root.expanduser().resolve()})
    return cfg


def _load_analyzer_file(path: Optional[Path]) -> Optional[SceneAnalyzer]:
    if path is None:
        return None
    payload = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(payload, dict):
        raise typer.BadParameter("分析结果需为 JSON 对象", param_name="analysis")
    return PrecomputedAnalyzer(payload)


def _fail(exc: VidStructError) -> typer.Exit:
    typer.echo(f"处理失败：{exc}", err=True)
    return typer.Exit(code=1)


@app.command("group")
def group_cmd(
    bucket: str = typer.Argument(..., help="存储 bucket"),
    prefix: str = typer.Argument(..., help="文档前缀，需包含 frame_embeddings.json"),
    storage_root: Optional[Path] = typer.Option(None, "--storage-root", help="覆盖文档存储根目录"),
    config_path: Optional[Path] = typer.Option(None, "--config", help="自定义配置文件"),
    log_level: str = typer.Option("INFO", "--log-level", help="日志级别"),
) -> None:
    """帧 -> 镜头 -> 场景分组，写出 shots_to_scenes.json。"""

    setup_logging(log_level)
    cfg = _resolve_config(config_path, storage_root)
    store = DocumentStore(cfg.storage_root)
    try:
        frames = pipeline.load_frames(store, bucket, prefix)
        loudnesses, pauses = pipeline.load_audio(store, bucket, prefix)
        frames, shots, scenes = pipeline.group_frames(frames, cfg, loudnesses=loudnesses, pauses=pauses)
        pipeline.save_grouping(store, bucket, prefix, frames, scenes)
    except VidStructError as exc:
        raise _fail(exc) from exc
    typer.echo(f"{len(frames)} 帧 -> {len(shots)} 个镜头 -> {len(scenes)} 个场景")


@app.command("refine")
def refine_cmd(
    bucket: str = typer.Argument(..., help="存储 bucket"),
    prefix: str = typer.Argument(..., help="文档前缀，需包含 boundary_frames.json"),
    item_id: int = typer.Option(0, "--item-id", help="当前分片序号"),
    iterations: int = typer.Option(1, "--iterations", help="分片总数"),
    storage_root: Optional[Path] = typer.Option(None, "--storage-root", help="覆盖文档存储根目录"),
    config_path: Optional[Path] = typer.Option(None, "--config", help="自定义配置文件"),
    log_level: str = typer.Option("INFO", "--log-level", help="日志级别"),
) -> None:
    """执行一次有界的边界细化调用；未完成时再次调用即可续跑。"""

    setup_logging(log_level)
    if not 0 <= item_id < iterations:
        raise typer.BadParameter("--item-id 需在 [0, iterations) 范围内", param_name="item_id")
    cfg = _resolve_config(config_path, storage_root)
    store = DocumentStore(cfg.storage_root)
    try:
        extractor = pipeline.load_extractor(store, bucket, prefix)
        if extractor is None:
            typer.echo(f"缺少 {pipeline.BOUNDARY_FRAMES_JSON}，无法细化", err=True)
            raise typer.Exit(code=1)
        state = pipeline.refine_stored_item(
            store,
            bucket,
            prefix,
            cfg,
            extractor,
            item_id=item_id,
            n_iterations=iterations,
        )
    except VidStructError as exc:
        raise _fail(exc) from exc
    typer.echo(
        f"Item #{state.item_id}: {state.status.value} {state.progress}% "
        f"({state.processed_count}/{state.total_count}), retries={state.retries}"
    )
    if state.status != RefineStatus.COMPLETED:
        typer.echo("尚未完成，请再次执行以继续")


@app.command("classify")
def classify_cmd(
    bucket: str = typer.Argument(..., help="存储 bucket"),
    prefix: str = typer.Argument(..., help="文档前缀"),
    analysis: Optional[Path] = typer.Option(None, "--analysis", exists=True, resolve_path=True, help="预先保存的节目结构分析 JSON"),
    validate_order: Optional[bool] = typer.Option(None, "--validate-order/--no-validate-order", help="覆盖时序校验开关"),
    storage_root: Optional[Path] = typer.Option(None, "--storage-root", help="覆盖文档存储根目录"),
    config_path: Optional[Path] = typer.Option(None, "--config", help="自定义配置文件"),
    log_level: str = typer.Option("INFO", "--log-level", help="日志级别"),
) -> None:
    """结构分类 + SMPTE 标记 + 场景输出 + 广告插入点。"""

    setup_logging(log_level)
    cfg = _resolve_config(config_path, storage_root)
    if validate_order is not None:
        classifier = cfg.classifier.model_copy(update={"validate_temporal_order": validate_order})
        cfg = cfg.model_copy(update={"classifier": classifier})
    store = DocumentStore(cfg.storage_root)
    try:
        analyzer = _load_analyzer_file(analysis) or pipeline.load_analyzer(store, bucket, prefix)
        frames = pipeline.load_frames(store, bucket, prefix)
        scenes = pipeline.load_scenes(store, bucket, prefix, frames)
        loudnesses, pauses = pipeline.load_audio(store, bucket, prefix)
        result = pipeline.classify_and_search(
            frames,
            scenes,
            cfg,
            loudnesses=loudnesses,
            pauses=pauses,
            dialogue_groups=pipeline.load_dialogue(store, bucket, prefix),
            analyzer=analyzer,
        )
        pipeline.save_structure(store, bucket, prefix, result)
    except VidStructError as exc:
        raise _fail(exc) from exc

    demoted = sum(1 for element in result.elements if element.misclassified)
    typer.echo(
        f"{len(result.elements)} 个结构元素（降级 {demoted}），"
        f"{len(result.markers)} 个 SMPTE 标记，{len(result.candidates)} 个广告插入点"
    )


@app.command("adbreaks")
def adbreaks_cmd(
    bucket: str = typer.Argument(..., help="存储 bucket"),
    prefix: str = typer.Argument(..., help="文档前缀，需包含 smpte_elements.json"),
    break_interval_ms: Optional[int] = typer.Option(None, "--interval-ms", help="覆盖插入间隔"),
    break_offset_ms: Optional[int] = typer.Option(None, "--offset-ms", help="覆盖搜索窗口半宽"),
    storage_root: Optional[Path] = typer.Option(None, "--storage-root", help="覆盖文档存储根目录"),
    config_path: Optional[Path] = typer.Option(None, "--config", help="自定义配置文件"),
    log_level: str = typer.Option("INFO", "--log-level", help="日志级别"),
) -> None:
    """基于已有 SMPTE 标记重新搜索广告插入点。"""

    setup_logging(log_level)
    cfg = _resolve_config(config_path, storage_root)
    updates = {}
    if break_interval_ms is not None:
        updates["break_interval_ms"] = break_interval_ms
    if break_offset_ms is not None:
        updates["break_offset_ms"] = break_offset_ms
    adbreak_cfg = cfg.adbreak.model_copy(update=updates)
    store = DocumentStore(cfg.storage_root)
    try:
        candidates = pipeline.search_stored_ad_breaks(store, bucket, prefix, cfg, adbreak_cfg)
    except VidStructError as exc:
        raise _fail(exc) from exc

    typer.echo(f"生成 {len(candidates)} 个广告插入点")
    top = sorted(candidates, key=lambda candidate: candidate.ranking or 0)[:3]
    for candidate in top:
        typer.echo(f" - scene#{candidate.scene_id} t={candidate.timestamp}ms weight={candidate.weight:.1f} {candidate.reason}")


@app.command("run")
def run_cmd(
    bucket: str = typer.Argument(..., help="存储 bucket"),
    prefix: str = typer.Argument(..., help="文档前缀，需包含 frame_embeddings.json"),
    analysis: Optional[Path] = typer.Option(None, "--analysis", exists=True, resolve_path=True, help="预先保存的节目结构分析 JSON"),
    storage_root: Optional[Path] = typer.Option(None, "--storage-root", help="覆盖文档存储根目录"),
    config_path: Optional[Path] = typer.Option(None, "--config", help="自定义配置文件"),
    log_level: str = typer.Option("INFO", "--log-level", help="日志级别"),
) -> None:
    """完整流程：分组、（有 boundary_frames.json 时）细化、分类与广告插入点。"""

    setup_logging(log_level)
    cfg = _resolve_config(config_path, storage_root)
    store = DocumentStore(cfg.storage_root)
    try:
        result = pipeline.run_stored_pipeline(store, bucket, prefix, cfg, analyzer=_load_analyzer_file(analysis))
    except VidStructError as exc:
        raise _fail(exc) from exc
    typer.echo(
        f"{len(result.frames)} 帧 -> {len(result.shots)} 个镜头 -> {len(result.scenes)} 个场景，"
        f"{len(result.elements)} 个结构元素，{len(result.candidates)} 个广告插入点"
    )


if __name__ == "__main__":  # pragma: no cover
    app()
