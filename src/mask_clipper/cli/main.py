"""命令行入口。"""

from __future__ import annotations

import asyncio
import logging
import signal
from pathlib import Path
from typing import List, Optional

import typer
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
)

from mask_clipper.core.config import OutputConfig, PipelineConfig
from mask_clipper.core.exceptions import MaskClipperError
from mask_clipper.core.models import FileStatus, Phase, ProcessingRun, RunStatus
from mask_clipper.core.output_manager import ensure_output_dir
from mask_clipper.core.progress import ItemStatusChanged, PipelineEvent, RunFinished, RunStarted
from mask_clipper.core.report import write_csv_report
from mask_clipper.core.scanner import collect_file_items
from mask_clipper.processing.mask_provider import DirectoryMaskProvider, MaskProvider, RembgMaskProvider
from mask_clipper.processing.pipeline import PipelineController
from mask_clipper.utils.logging import setup_logging

app = typer.Typer(help="批量抠图：根据分割蒙版生成透明背景的 PNG。")

LOGGER = logging.getLogger(__name__)

EXIT_CANCELLED = 130


def _build_progress_callback(progress: Progress):
    task_id: Optional[int] = None

    def callback(event: PipelineEvent) -> None:
        nonlocal task_id
        if isinstance(event, RunStarted):
            task_id = progress.add_task("处理图片", total=100)
            return
        if task_id is None:
            return
        progress.update(task_id, completed=event.run.progress)
        if isinstance(event, ItemStatusChanged):
            if event.status is FileStatus.PROCESSING:
                progress.update(task_id, description=f"处理 {event.item.name}")
            elif event.status is FileStatus.ERROR:
                progress.log(f"[red]失败[/red] {event.item.name}: {event.message}")
        elif isinstance(event, RunFinished) and event.status is RunStatus.CANCELLED:
            progress.update(task_id, description="已取消")

    return callback


def _build_mask_provider(masks: Optional[Path], model: str) -> MaskProvider:
    if masks is not None:
        mask_dir = masks.expanduser().resolve()
        if not mask_dir.is_dir():
            raise typer.BadParameter(f"蒙版目录不存在: {mask_dir}", param_hint="--masks")
        return DirectoryMaskProvider(mask_dir)
    return RembgMaskProvider(model_name=model)


def _write_report(controller: PipelineController, run: ProcessingRun, output_dir: Path, filename: str) -> None:
    try:
        report_path = write_csv_report(controller.files, run, output_dir, filename)
    except OSError as exc:
        LOGGER.error("写入报告失败：%s", exc)
        return
    typer.echo(f"报告文件：{report_path}")


@app.command("run")
def run_cli(  # noqa: PLR0913
    source: List[Path] = typer.Argument(..., help="源图片文件或目录，可指定多个"),
    output: Path = typer.Option(..., "--output", "-o", help="输出目录"),
    masks: Optional[Path] = typer.Option(None, "--masks", help="预先生成的蒙版目录（{文件名}-mask.png）"),
    model: str = typer.Option("u2net", "--model", help="未指定 --masks 时使用的 rembg 模型"),
    conflict_strategy: str = typer.Option("overwrite", "--on-conflict", help="文件名冲突策略 overwrite/rename/fail"),
    timeout: Optional[float] = typer.Option(None, "--timeout", help="单步（蒙版生成/写入）超时秒数"),
    allow_recursive: bool = typer.Option(True, "--recursive/--no-recursive", help="是否递归扫描目录"),
    report: bool = typer.Option(True, "--report/--no-report", help="是否在输出目录写入 CSV 报告"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="输出调试日志"),
) -> None:
    """执行批量抠图。按 Ctrl+C 在当前步骤完成后停止。"""

    setup_logging(verbose)
    LOGGER.debug("CLI 参数解析完成")

    files = collect_file_items([p.expanduser() for p in source], recursive=allow_recursive)
    if not files:
        typer.echo("没有需要处理的图片。")
        raise typer.Exit(code=1)

    try:
        output_dir = ensure_output_dir(output)
        config = PipelineConfig(
            output=OutputConfig(output_dir=output_dir, conflict_strategy=conflict_strategy),
            step_timeout=timeout,
            report_filename="report.csv" if report else None,
        )
        controller = PipelineController(_build_mask_provider(masks, model), config=config)
    except MaskClipperError as exc:
        raise typer.BadParameter(str(exc)) from exc

    progress = Progress(
        SpinnerColumn(),
        TextColumn("[bold blue]{task.description}"),
        BarColumn(),
        TextColumn("{task.percentage:>3.0f}%"),
        TimeElapsedColumn(),
    )
    controller.subscribe(_build_progress_callback(progress))

    def handle_interrupt(signum, frame) -> None:  # noqa: ARG001
        if controller.phase is Phase.RUNNING:
            controller.request_cancel()

    previous_handler = signal.signal(signal.SIGINT, handle_interrupt)
    try:
        with progress:
            run = asyncio.run(controller.start_run(files))
    finally:
        signal.signal(signal.SIGINT, previous_handler)

    if config.report_filename:
        _write_report(controller, run, output_dir, config.report_filename)

    completed = run.count(FileStatus.COMPLETED)
    failed = run.count(FileStatus.ERROR)
    controller.acknowledge_terminal()

    if run.status is RunStatus.CANCELLED:
        typer.echo(f"已取消：成功 {completed} 张，失败 {failed} 张，未处理 {run.total - completed - failed} 张。")
        raise typer.Exit(code=EXIT_CANCELLED)

    typer.echo(f"处理完成：成功 {completed} 张，失败 {failed} 张。")


if __name__ == "__main__":
    app()
