"""报告生成工具。"""

from __future__ import annotations

import csv
from pathlib import Path
from typing import Sequence

from mask_clipper.core.models import FileItem, ProcessingRun

HEADER = ["name", "source", "status", "output_path", "message"]


def write_csv_report(files: Sequence[FileItem], run: ProcessingRun, output_dir: Path, filename: str) -> Path:
    """将处理结果按文件列表顺序写入 CSV 报告。"""

    report_path = output_dir / filename
    with report_path.open("w", newline="", encoding="utf-8") as handle:
        writer = csv.writer(handle)
        writer.writerow(HEADER)
        for item in files:
            outcome = run.outcomes.get(item.id)
            if outcome is None:
                continue
            writer.writerow(
                [
                    item.name,
                    _format_source(item),
                    outcome.status.value,
                    str(outcome.output_path) if outcome.output_path else "",
                    outcome.message or "",
                ]
            )
    return report_path


def _format_source(item: FileItem) -> str:
    if isinstance(item.source, Path):
        return str(item.source)
    return "<memory>"
