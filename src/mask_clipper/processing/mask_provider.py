"""蒙版生成服务：接口定义与两种实现。"""

from __future__ import annotations

import asyncio
import io
import logging
import threading
from pathlib import Path
from typing import Any, Optional, Protocol

from PIL import Image

from mask_clipper.core.exceptions import DecodeError, PredictionError
from mask_clipper.core.models import SourceHandle
from mask_clipper.core.scanner import IMAGE_EXTENSIONS
from mask_clipper.processing.image_loader import load_mask, load_source

LOGGER = logging.getLogger(__name__)


class MaskProvider(Protocol):
    """给定源图片，返回语义一致的灰度蒙版。失败时抛出 ``PredictionError``。"""

    async def generate(self, source: SourceHandle) -> Image.Image:
        ...


class DirectoryMaskProvider:
    """从目录中读取预先生成的蒙版，按 ``{源文件名}{suffix}.*`` 匹配。"""

    def __init__(self, mask_dir: Path, suffix: str = "-mask") -> None:
        self.mask_dir = mask_dir
        self.suffix = suffix

    async def generate(self, source: SourceHandle) -> Image.Image:
        if not isinstance(source, Path):
            raise PredictionError("DirectoryMaskProvider 只支持磁盘路径作为输入")

        mask_path = self.find_mask(source)
        if mask_path is None:
            raise PredictionError(f"未找到对应的蒙版: {source.name}")

        try:
            return await asyncio.to_thread(load_mask, mask_path)
        except DecodeError as exc:
            raise PredictionError(f"蒙版文件无法读取: {mask_path}") from exc

    def find_mask(self, source: Path) -> Optional[Path]:
        if not self.mask_dir.is_dir():
            return None
        # 按文件名直接比较，源文件名中的 [ ] * ? 不能当作通配符
        stem = f"{source.stem}{self.suffix}"
        for candidate in sorted(self.mask_dir.iterdir()):
            if candidate.stem == stem and candidate.is_file() and candidate.suffix.lower() in IMAGE_EXTENSIONS:
                return candidate
        return None


class RembgMaskProvider:
    """基于 rembg 的蒙版生成。所有请求共用一个模型会话。"""

    def __init__(self, model_name: str = "u2net") -> None:
        self.model_name = model_name
        self._session: Any = None
        self._lock = threading.Lock()

    async def generate(self, source: SourceHandle) -> Image.Image:
        return await asyncio.to_thread(self._predict, source)

    def _predict(self, source: SourceHandle) -> Image.Image:
        rembg = self._import_rembg()
        try:
            image = load_source(source)
        except DecodeError as exc:
            raise PredictionError(str(exc)) from exc

        try:
            with self._lock:
                if self._session is None:
                    LOGGER.info("加载 rembg 模型: %s", self.model_name)
                    self._session = rembg.new_session(model_name=self.model_name)
                mask = rembg.remove(image, session=self._session, only_mask=True)
        except Exception as exc:  # noqa: BLE001
            raise PredictionError(f"蒙版推理失败: {exc}") from exc
        finally:
            image.close()

        if isinstance(mask, bytes):
            mask = Image.open(io.BytesIO(mask))
        return mask.convert("L")

    @staticmethod
    def _import_rembg() -> Any:
        try:
            import rembg  # type: ignore[import-not-found]
        except ImportError as exc:
            raise PredictionError("未安装 rembg，请执行 pip install 'mask-clipper[rembg]'") from exc
        return rembg
