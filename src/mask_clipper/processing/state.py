"""批处理控制器的显式状态机。

状态为不可变对象，``transition(state, action)`` 返回新状态，不修改旧状态。
非法操作抛出 ``InvalidState``，启动条件不满足抛出 ``PreconditionFailed``。
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from pathlib import Path
from types import MappingProxyType
from typing import Optional, Sequence, Union

from mask_clipper.core.exceptions import InvalidState, PreconditionFailed
from mask_clipper.core.models import FileItem, FileOutcome, FileStatus, Phase, ProcessingRun, RunStatus
from mask_clipper.core.progress import compute_progress

ALLOWED_ITEM_TRANSITIONS = {
    FileStatus.PENDING: {FileStatus.PROCESSING},
    FileStatus.PROCESSING: {FileStatus.COMPLETED, FileStatus.ERROR},
    FileStatus.COMPLETED: set(),
    FileStatus.ERROR: set(),
}

_TERMINAL_PHASES = {Phase.COMPLETED, Phase.CANCELLED}


@dataclass(frozen=True, slots=True)
class PipelineState:
    files: tuple[FileItem, ...] = ()
    output_dir: Optional[Path] = None
    run: Optional[ProcessingRun] = None

    @property
    def phase(self) -> Phase:
        if self.run is None:
            return Phase.IDLE
        if self.run.status is RunStatus.PROCESSING:
            return Phase.RUNNING
        if self.run.status is RunStatus.SUCCESS:
            return Phase.COMPLETED
        return Phase.CANCELLED


@dataclass(frozen=True, slots=True)
class FilesAdded:
    items: tuple[FileItem, ...]


@dataclass(frozen=True, slots=True)
class FileRemoved:
    index: int


@dataclass(frozen=True, slots=True)
class FilesCleared:
    pass


@dataclass(frozen=True, slots=True)
class OutputDirSelected:
    path: Optional[Path]


@dataclass(frozen=True, slots=True)
class StartRun:
    pass


@dataclass(frozen=True, slots=True)
class AdvanceIndex:
    index: int


@dataclass(frozen=True, slots=True)
class MarkItem:
    item_id: str
    status: FileStatus
    output_path: Optional[Path] = None
    message: Optional[str] = None


@dataclass(frozen=True, slots=True)
class FinishRun:
    status: RunStatus


@dataclass(frozen=True, slots=True)
class Acknowledge:
    pass


Action = Union[
    FilesAdded, FileRemoved, FilesCleared, OutputDirSelected, StartRun, AdvanceIndex, MarkItem, FinishRun, Acknowledge
]


def transition(state: PipelineState, action: Action) -> PipelineState:
    """状态转移函数。"""

    phase = state.phase

    if isinstance(action, (FilesAdded, FileRemoved, FilesCleared, OutputDirSelected)):
        if phase is Phase.RUNNING:
            raise InvalidState("处理过程中不能修改文件列表或输出目录")
        return _edit(state, action)

    if isinstance(action, StartRun):
        if phase is Phase.RUNNING:
            raise InvalidState("已有任务正在执行")
        if phase in _TERMINAL_PHASES:
            raise InvalidState("上一次任务尚未确认，请先调用 acknowledge_terminal")
        if state.output_dir is None:
            raise PreconditionFailed("未设置输出目录")
        if not state.files:
            raise PreconditionFailed("文件列表为空")
        return replace(state, run=_new_run(state.files))

    if isinstance(action, Acknowledge):
        if phase not in _TERMINAL_PHASES:
            raise InvalidState(f"当前状态 {phase.value} 不能确认结束")
        return replace(state, run=None)

    # 以下操作只在执行期间有效
    if phase is not Phase.RUNNING:
        raise InvalidState(f"当前状态 {phase.value} 不接受 {type(action).__name__}")
    assert state.run is not None

    if isinstance(action, AdvanceIndex):
        if not state.run.current_index <= action.index < state.run.total:
            raise InvalidState(f"处理序号不能回退或越界: {action.index}")
        return replace(state, run=replace(state.run, current_index=action.index))

    if isinstance(action, MarkItem):
        return replace(state, run=_mark_item(state.run, action))

    if isinstance(action, FinishRun):
        return replace(state, run=_finish(state.run, action.status))

    raise TypeError(f"未知的操作: {action!r}")


def _edit(state: PipelineState, action: Action) -> PipelineState:
    if isinstance(action, FilesAdded):
        return replace(state, files=state.files + tuple(action.items))
    if isinstance(action, FileRemoved):
        if not 0 <= action.index < len(state.files):
            raise IndexError(f"文件序号越界: {action.index}")
        files = state.files[: action.index] + state.files[action.index + 1 :]
        return replace(state, files=files)
    if isinstance(action, FilesCleared):
        return replace(state, files=(), run=None)
    assert isinstance(action, OutputDirSelected)
    return replace(state, output_dir=action.path)


def _new_run(files: Sequence[FileItem]) -> ProcessingRun:
    outcomes = {item.id: FileOutcome(item_id=item.id, name=item.name) for item in files}
    if len(outcomes) != len(files):
        raise PreconditionFailed("文件列表中存在重复的 id")
    return ProcessingRun(status=RunStatus.PROCESSING, outcomes=MappingProxyType(outcomes))


def _mark_item(run: ProcessingRun, action: MarkItem) -> ProcessingRun:
    current = run.outcomes.get(action.item_id)
    if current is None:
        raise InvalidState(f"文件不属于当前任务: {action.item_id}")
    if action.status not in ALLOWED_ITEM_TRANSITIONS[current.status]:
        raise InvalidState(f"非法的状态变化: {current.status.value} -> {action.status.value}")

    outcomes = dict(run.outcomes)
    outcomes[action.item_id] = replace(
        current,
        status=action.status,
        output_path=action.output_path,
        message=action.message,
    )
    progress = compute_progress(outcome.status for outcome in outcomes.values())
    return replace(run, outcomes=MappingProxyType(outcomes), progress=progress)


def _finish(run: ProcessingRun, status: RunStatus) -> ProcessingRun:
    if status is RunStatus.SUCCESS:
        return replace(run, status=status, progress=100)
    if status is RunStatus.CANCELLED:
        return replace(run, status=status, cancel_requested=True)
    raise InvalidState(f"不是终止状态: {status.value}")
