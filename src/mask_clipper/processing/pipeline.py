"""处理流水线：按顺序为每个文件生成蒙版、合成透明背景并写出结果。"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import replace
from pathlib import Path
from typing import Awaitable, Callable, Iterable, Optional, Sequence, TypeVar

from PIL import Image

from mask_clipper.core.config import PipelineConfig
from mask_clipper.core.exceptions import InvalidState
from mask_clipper.core.models import FileItem, FileStatus, Phase, ProcessingRun, RunStatus
from mask_clipper.core.naming import derive_output_name
from mask_clipper.core.output_manager import FileWriter, OutputWriter
from mask_clipper.core.progress import ItemStatusChanged, PipelineEvent, RunFinished, RunStarted
from mask_clipper.processing.compositor import apply_mask
from mask_clipper.processing.mask_provider import MaskProvider
from mask_clipper.processing.state import (
    Acknowledge,
    Action,
    AdvanceIndex,
    FileRemoved,
    FilesAdded,
    FilesCleared,
    FinishRun,
    MarkItem,
    OutputDirSelected,
    PipelineState,
    StartRun,
    transition,
)

LOGGER = logging.getLogger(__name__)

EventCallback = Callable[[PipelineEvent], None]
Compositor = Callable[..., bytes]
NamingPolicy = Callable[[str], str]

T = TypeVar("T")


class _RunCancelled(Exception):
    """检查点发现取消请求时在内部抛出。"""


class PipelineController:
    """持有文件列表与运行记录，驱动逐个文件的处理循环。

    所有状态变化都经过 ``transition``，并以事件形式同步通知订阅者。
    ``request_cancel`` 是唯一允许从其他线程调用的方法。
    """

    def __init__(
        self,
        mask_provider: MaskProvider,
        writer: Optional[FileWriter] = None,
        config: Optional[PipelineConfig] = None,
        *,
        compositor: Compositor = apply_mask,
        naming_policy: NamingPolicy = derive_output_name,
    ) -> None:
        self.config = config or PipelineConfig()
        self.config.validate()

        conflict_strategy = self.config.output.conflict_strategy if self.config.output else "overwrite"
        self._mask_provider = mask_provider
        self._writer = writer or OutputWriter(conflict_strategy)
        self._compositor = compositor
        self._naming_policy = naming_policy

        output_dir = self.config.output.output_dir if self.config.output else None
        self._state = PipelineState(output_dir=output_dir)
        self._cancel = threading.Event()
        self._subscribers: list[EventCallback] = []

    # ------------------------------------------------------------------ 状态查询

    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def phase(self) -> Phase:
        return self._state.phase

    @property
    def files(self) -> tuple[FileItem, ...]:
        return self._state.files

    @property
    def output_dir(self) -> Optional[Path]:
        return self._state.output_dir

    @property
    def run(self) -> Optional[ProcessingRun]:
        """当前运行记录的快照；没有任务时为 None。"""

        run = self._state.run
        if run is not None and run.status is RunStatus.PROCESSING and self._cancel.is_set():
            return replace(run, cancel_requested=True)
        return run

    def subscribe(self, callback: EventCallback) -> Callable[[], None]:
        """注册事件回调，返回取消订阅的函数。"""

        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    # ------------------------------------------------------------------ 文件列表

    def add_files(self, items: Iterable[FileItem]) -> None:
        self._dispatch(FilesAdded(tuple(items)))

    def remove_file(self, index: int) -> None:
        self._dispatch(FileRemoved(index))

    def clear_files(self) -> None:
        """清空文件列表，同时丢弃已结束的运行记录。"""

        self._dispatch(FilesCleared())

    reset = clear_files

    def set_output_dir(self, path: Optional[Path]) -> None:
        self._dispatch(OutputDirSelected(path))

    # ------------------------------------------------------------------ 运行控制

    def request_cancel(self) -> None:
        """请求取消。只设置标志，由处理循环在检查点响应。"""

        if self._state.phase is not Phase.RUNNING:
            raise InvalidState("当前没有正在执行的任务")
        if not self._cancel.is_set():
            LOGGER.info("收到取消请求，将在下一个检查点停止")
            self._cancel.set()

    def acknowledge_terminal(self) -> None:
        """确认已结束的任务，丢弃运行记录并回到空闲状态。"""

        self._dispatch(Acknowledge())

    async def start_run(self, files: Optional[Sequence[FileItem]] = None) -> ProcessingRun:
        """启动批处理并一直执行到终止状态，返回最终的运行记录。

        传入 ``files`` 时先替换当前文件列表。前置条件不满足时抛出
        ``PreconditionFailed``；已有任务执行，或上一次任务结束后尚未
        ``acknowledge_terminal`` 时抛出 ``InvalidState``，运行记录不会被隐式丢弃；
        单个文件的失败不会向外抛出。
        """

        state = self._state
        if files is not None:
            if state.phase is not Phase.IDLE:
                raise InvalidState(f"当前状态 {state.phase.value} 不能启动新任务")
            state = transition(transition(state, FilesCleared()), FilesAdded(tuple(files)))
        state = transition(state, StartRun())

        self._cancel.clear()
        self._state = state
        output_dir = state.output_dir
        assert output_dir is not None

        LOGGER.info("开始处理 %d 个文件，输出目录: %s", len(state.files), output_dir)
        self._emit(RunStarted(run=self._current_run(), total=len(state.files)))

        try:
            return await self._process_all(state.files, output_dir)
        except asyncio.CancelledError:
            if self._state.phase is Phase.RUNNING:
                self._finish(RunStatus.CANCELLED)
            raise

    async def _process_all(self, files: Sequence[FileItem], output_dir: Path) -> ProcessingRun:
        for index, item in enumerate(files):
            if self._cancel.is_set():
                return self._finish(RunStatus.CANCELLED)

            self._dispatch(AdvanceIndex(index))
            self._mark(item, index, FileStatus.PROCESSING)

            try:
                output_path = await self._process_item(item, output_dir)
            except _RunCancelled:
                return self._finish(RunStatus.CANCELLED)
            except Exception as exc:  # noqa: BLE001
                LOGGER.warning("处理失败：%s -> %s", item.name, exc, exc_info=exc)
                self._mark(item, index, FileStatus.ERROR, message=_describe_error(exc))
                continue

            self._mark(item, index, FileStatus.COMPLETED, output_path=output_path)

        return self._finish(RunStatus.SUCCESS)

    async def _process_item(self, item: FileItem, output_dir: Path) -> Path:
        LOGGER.debug("请求蒙版：%s", item.name)
        mask = await self._with_timeout(self._mask_provider.generate(item.source))
        try:
            self._checkpoint()
            LOGGER.debug("合成：%s", item.name)
            encoded = await asyncio.to_thread(self._compositor, item.source, mask)
        finally:
            if isinstance(mask, Image.Image):
                mask.close()
        self._checkpoint()

        output_name = self._naming_policy(item.name)
        output_path = await self._with_timeout(self._writer.write(output_dir, output_name, encoded))
        self._checkpoint()
        return output_path

    async def _with_timeout(self, awaitable: Awaitable[T]) -> T:
        if self.config.step_timeout is None:
            return await awaitable
        return await asyncio.wait_for(awaitable, timeout=self.config.step_timeout)

    def _checkpoint(self) -> None:
        if self._cancel.is_set():
            raise _RunCancelled()

    # ------------------------------------------------------------------ 内部工具

    def _mark(
        self,
        item: FileItem,
        index: int,
        status: FileStatus,
        *,
        output_path: Optional[Path] = None,
        message: Optional[str] = None,
    ) -> None:
        self._dispatch(MarkItem(item.id, status, output_path=output_path, message=message))
        self._emit(
            ItemStatusChanged(run=self._current_run(), item=item, index=index, status=status, message=message)
        )

    def _finish(self, status: RunStatus) -> ProcessingRun:
        self._dispatch(FinishRun(status))
        run = self._current_run()
        if status is RunStatus.CANCELLED:
            LOGGER.info(
                "任务已取消：完成 %d，失败 %d，共 %d",
                run.count(FileStatus.COMPLETED),
                run.count(FileStatus.ERROR),
                run.total,
            )
        else:
            LOGGER.info(
                "处理完成：成功 %d，失败 %d",
                run.count(FileStatus.COMPLETED),
                run.count(FileStatus.ERROR),
            )
        self._emit(RunFinished(run=run, status=status))
        return run

    def _current_run(self) -> ProcessingRun:
        run = self.run
        assert run is not None
        return run

    def _dispatch(self, action: Action) -> None:
        self._state = transition(self._state, action)

    def _emit(self, event: PipelineEvent) -> None:
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception as exc:  # noqa: BLE001
                LOGGER.exception("事件回调异常：%s", exc)


def _describe_error(exc: BaseException) -> str:
    text = str(exc)
    if not text:
        return type(exc).__name__
    return f"{type(exc).__name__}: {text}"
