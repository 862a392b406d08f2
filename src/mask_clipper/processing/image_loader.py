"""图片加载与基础预处理实现。"""

from __future__ import annotations

import io
import logging
from pathlib import Path
from typing import Union

from PIL import Image, ImageOps, UnidentifiedImageError

from mask_clipper.core.exceptions import DecodeError
from mask_clipper.core.models import SourceHandle

LOGGER = logging.getLogger(__name__)

ImageInput = Union[SourceHandle, Image.Image]

_DECODE_ERRORS = (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError)


def load_source(handle: ImageInput) -> Image.Image:
    """加载源图片，执行 EXIF 旋转并统一为 RGB 或 RGBA。

    返回值为新的 Image 对象，调用者负责关闭。
    """

    img = _open(handle, "源图片")
    try:
        # EXIF Orientation 校正
        oriented = ImageOps.exif_transpose(img)
        if oriented.mode in {"RGB", "RGBA"}:
            return oriented
        if _has_alpha(oriented):
            return oriented.convert("RGBA")
        return oriented.convert("RGB")
    except _DECODE_ERRORS as exc:
        raise DecodeError(f"无法解码源图片: {_describe(handle)}") from exc
    finally:
        img.close()


def load_mask(handle: ImageInput) -> Image.Image:
    """加载蒙版并统一为 RGB（灰度蒙版三通道取值相同）。

    带透明通道的蒙版中，完全透明的像素按黑色处理。
    """

    img = _open(handle, "蒙版")
    try:
        if img.mode in {"RGBA", "LA"} or _has_alpha(img):
            return _clear_transparent(img)
        return img.convert("RGB")
    except _DECODE_ERRORS as exc:
        raise DecodeError(f"无法解码蒙版: {_describe(handle)}") from exc
    finally:
        img.close()


def _open(handle: ImageInput, label: str) -> Image.Image:
    if isinstance(handle, Image.Image):
        return handle.copy()

    try:
        if isinstance(handle, (bytes, bytearray)):
            img = Image.open(io.BytesIO(handle))
        else:
            img = Image.open(Path(handle))
        img.load()
        return img
    except _DECODE_ERRORS as exc:
        LOGGER.debug("无法识别%s %s: %s", label, _describe(handle), exc)
        raise DecodeError(f"无法加载{label}: {_describe(handle)}") from exc


def _has_alpha(img: Image.Image) -> bool:
    return img.mode in {"LA", "PA", "RGBa", "La"} or (img.mode == "P" and "transparency" in img.info)


def _describe(handle: ImageInput) -> str:
    if isinstance(handle, (bytes, bytearray)):
        return f"<{len(handle)} 字节>"
    if isinstance(handle, Image.Image):
        return f"<{handle.mode} {handle.size[0]}x{handle.size[1]}>"
    return str(handle)


def _clear_transparent(img: Image.Image) -> Image.Image:
    """alpha 为 0 的像素置为黑色，其余像素保留原有颜色。"""

    rgba = img.convert("RGBA")
    visible = rgba.getchannel("A").point(lambda value: 255 if value else 0)
    background = Image.new("RGB", rgba.size, (0, 0, 0))
    background.paste(rgba.convert("RGB"), mask=visible)
    return background
