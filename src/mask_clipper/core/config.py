"""处理任务的配置模型。"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from mask_clipper.core.exceptions import InvalidConfigurationError

CONFLICT_STRATEGIES = ("overwrite", "rename", "fail")


@dataclass(slots=True)
class OutputConfig:
    """输出目录与冲突策略配置。"""

    output_dir: Path
    conflict_strategy: str = "overwrite"  # overwrite | rename | fail

    def validate(self) -> None:
        if self.conflict_strategy not in CONFLICT_STRATEGIES:
            raise InvalidConfigurationError(f"未知的冲突策略: {self.conflict_strategy}")


@dataclass(slots=True)
class PipelineConfig:
    """单次批处理任务的配置集合。"""

    output: Optional[OutputConfig] = None
    step_timeout: Optional[float] = None  # 秒；None 表示不限时
    report_filename: Optional[str] = "report.csv"

    def validate(self) -> None:
        if self.output is not None:
            self.output.validate()
        if self.step_timeout is not None and self.step_timeout <= 0:
            raise InvalidConfigurationError("step_timeout 必须大于 0")
