"""进度计算与控制器事件的数据模型。"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional

from mask_clipper.core.models import FileItem, FileStatus, ProcessingRun, RunStatus


def compute_progress(statuses: Iterable[FileStatus]) -> int:
    """根据已结束（完成或失败）的文件数量计算百分比进度。"""

    total = 0
    finished = 0
    for status in statuses:
        total += 1
        if status.is_finished:
            finished += 1
    if total == 0:
        return 0
    # 与 JS 的 Math.round 保持一致：.5 向上取整。
    return (200 * finished + total) // (2 * total)


@dataclass(frozen=True, slots=True)
class PipelineEvent:
    """所有控制器事件的基类，附带当前运行记录的快照。"""

    run: ProcessingRun


@dataclass(frozen=True, slots=True)
class RunStarted(PipelineEvent):
    total: int


@dataclass(frozen=True, slots=True)
class ItemStatusChanged(PipelineEvent):
    item: FileItem
    index: int
    status: FileStatus
    message: Optional[str] = None

    @property
    def progress(self) -> int:
        return self.run.progress


@dataclass(frozen=True, slots=True)
class RunFinished(PipelineEvent):
    status: RunStatus

    @property
    def progress(self) -> int:
        return self.run.progress
