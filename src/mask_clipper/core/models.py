"""核心数据模型定义。"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Mapping, Optional, Union

SourceHandle = Union[Path, bytes]


class FileStatus(str, Enum):
    """单个文件的处理状态。"""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def is_finished(self) -> bool:
        return self in (FileStatus.COMPLETED, FileStatus.ERROR)


class RunStatus(str, Enum):
    """一次批处理的整体状态。"""

    PROCESSING = "processing"
    SUCCESS = "success"
    CANCELLED = "cancelled"


class Phase(str, Enum):
    """控制器所处的阶段。"""

    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


def _new_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True, slots=True)
class FileItem:
    """排队等待处理的一个文件。

    ``source`` 可以是磁盘路径，也可以是已读入内存的原始字节。
    """

    name: str
    source: SourceHandle
    size: int = 0
    id: str = field(default_factory=_new_id)

    @classmethod
    def from_path(cls, path: Path) -> "FileItem":
        return cls(name=path.name, source=path, size=path.stat().st_size)


@dataclass(frozen=True, slots=True)
class FileOutcome:
    """记录单个文件的处理结果（用于报告/日志）。"""

    item_id: str
    name: str
    status: FileStatus = FileStatus.PENDING
    output_path: Optional[Path] = None
    message: Optional[str] = None


@dataclass(frozen=True, slots=True)
class ProcessingRun:
    """一次批处理执行的只读快照。"""

    status: RunStatus
    outcomes: Mapping[str, FileOutcome]
    current_index: int = 0
    progress: int = 0
    cancel_requested: bool = False

    @property
    def item_status(self) -> Mapping[str, FileStatus]:
        return MappingProxyType({item_id: outcome.status for item_id, outcome in self.outcomes.items()})

    @property
    def total(self) -> int:
        return len(self.outcomes)

    def count(self, status: FileStatus) -> int:
        return sum(1 for outcome in self.outcomes.values() if outcome.status is status)
