"""输出写入与冲突处理模块。"""

from __future__ import annotations

import asyncio
import logging
from itertools import count
from pathlib import Path
from typing import Protocol

from mask_clipper.core.config import CONFLICT_STRATEGIES
from mask_clipper.core.exceptions import FileWriteError, InvalidConfigurationError

LOGGER = logging.getLogger(__name__)


class FileWriter(Protocol):
    """写入结果文件的能力接口。"""

    async def write(self, directory: Path, file_name: str, data: bytes) -> Path:
        ...


class OutputWriter:
    """负责处理输出目录、冲突策略与字节写入。"""

    def __init__(self, conflict_strategy: str = "overwrite") -> None:
        if conflict_strategy not in CONFLICT_STRATEGIES:
            raise InvalidConfigurationError(f"未知的冲突策略: {conflict_strategy}")
        self.conflict_strategy = conflict_strategy

    async def write(self, directory: Path, file_name: str, data: bytes) -> Path:
        """在工作线程中写入文件，返回最终的输出路径。"""

        return await asyncio.to_thread(self.write_sync, directory, file_name, data)

    def write_sync(self, directory: Path, file_name: str, data: bytes) -> Path:
        destination = self.decide_destination(directory / file_name)
        try:
            destination.write_bytes(data)
        except OSError as exc:
            raise FileWriteError(f"写入文件失败: {destination}") from exc
        LOGGER.debug("已写入 %s (%d 字节)", destination, len(data))
        return destination

    def decide_destination(self, destination: Path) -> Path:
        """根据冲突策略确定输出路径。"""

        if not destination.exists():
            return destination

        strategy = self.conflict_strategy
        if strategy == "overwrite":
            LOGGER.info("目标已存在，覆盖: %s", destination.name)
            return destination
        if strategy == "fail":
            raise FileWriteError(f"目标已存在: {destination}")
        if strategy == "rename":
            renamed = self._generate_renamed_path(destination)
            LOGGER.info("目标已存在: %s -> 重命名为 %s", destination.name, renamed.name)
            return renamed

        raise InvalidConfigurationError(f"未知的冲突策略: {strategy}")

    def _generate_renamed_path(self, destination: Path) -> Path:
        """在 rename 策略下生成新的文件名。"""

        stem = destination.stem
        suffix = destination.suffix

        for idx in count(1):
            candidate = destination.with_name(f"{stem}_{idx}{suffix}")
            if not candidate.exists():
                return candidate

        # 理论上不会执行到此处
        return destination


def ensure_output_dir(path: Path) -> Path:
    """校验输出目录存在且为目录，必要时创建。"""

    resolved = path.expanduser().resolve()
    if resolved.exists() and not resolved.is_dir():
        raise InvalidConfigurationError(f"输出路径不是目录: {resolved}")
    resolved.mkdir(parents=True, exist_ok=True)
    return resolved
