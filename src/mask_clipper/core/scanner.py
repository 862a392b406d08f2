"""文件扫描与筛选逻辑。"""

from __future__ import annotations

from pathlib import Path
from typing import Iterator, Sequence

from mask_clipper.core.models import FileItem

IMAGE_EXTENSIONS = {".png", ".jpg", ".jpeg", ".webp", ".bmp", ".gif", ".tif", ".tiff"}


def _iter_candidate_files(path: Path, recursive: bool) -> Iterator[Path]:
    """遍历路径下的所有文件。"""

    if path.is_file():
        yield path
        return

    if not path.is_dir():
        return

    iterator = path.rglob("*") if recursive else path.glob("*")
    for candidate in iterator:
        if candidate.is_file():
            yield candidate


def is_image_file(path: Path) -> bool:
    return path.suffix.lower() in IMAGE_EXTENSIONS


def collect_file_items(sources: Sequence[Path], *, recursive: bool = True) -> list[FileItem]:
    """扫描给定的文件或目录，按路径排序后返回待处理的 FileItem 列表。"""

    collected: list[Path] = []
    seen_paths: set[Path] = set()

    for root in sources:
        for candidate in _iter_candidate_files(root.resolve(), recursive):
            if candidate in seen_paths:
                continue
            seen_paths.add(candidate)
            if not is_image_file(candidate):
                continue
            collected.append(candidate)

    collected.sort(key=lambda x: str(x).lower())
    return [FileItem.from_path(path) for path in collected]
