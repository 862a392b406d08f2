"""蒙版合成：把灰度蒙版的亮度转换为透明度，输出 RGBA PNG。"""

from __future__ import annotations

import io

import numpy as np
from PIL import Image

from mask_clipper.core.exceptions import EncodeError
from mask_clipper.processing.image_loader import ImageInput, load_mask, load_source

_RESAMPLING = getattr(Image, "Resampling", Image)


def apply_mask(source: ImageInput, mask: ImageInput) -> bytes:
    """以蒙版亮度作为透明度裁剪源图片，返回 PNG 字节。

    纯函数：相同输入总是得到逐字节相同的输出。输入无法解码时抛出
    ``DecodeError``，编码失败时抛出 ``EncodeError``。
    """

    photo = load_source(source)
    mask_image = load_mask(mask)
    try:
        alpha = luma_to_alpha(mask_image, photo.size)
        result = composite(photo, alpha)
    finally:
        mask_image.close()
        photo.close()

    try:
        return encode_png(result)
    finally:
        result.close()


def luma_to_alpha(mask: Image.Image, size: tuple[int, int]) -> Image.Image:
    """将蒙版拉伸到目标尺寸，并以 R、G、B 的算术平均值作为 alpha。

    不做加权、阈值或 gamma 校正。平均值的小数部分只可能是 0、1/3、2/3，
    因此 ``(R + G + B + 1) // 3`` 与四舍五入完全一致。
    """

    rgb = mask if mask.mode == "RGB" else mask.convert("RGB")
    if rgb.size != size:
        rgb = rgb.resize(size, _RESAMPLING.BILINEAR)

    channels = np.asarray(rgb, dtype=np.uint16)
    brightness = (channels.sum(axis=2, dtype=np.uint16) + 1) // 3
    return Image.fromarray(brightness.astype(np.uint8))


def composite(photo: Image.Image, alpha: Image.Image) -> Image.Image:
    """source-in 合成：颜色取自源图片，透明度取自蒙版。

    源图片自带透明通道时，两者相乘。
    """

    if photo.mode == "RGBA":
        own_alpha = np.asarray(photo.getchannel("A"), dtype=np.uint16)
        mask_alpha = np.asarray(alpha, dtype=np.uint16)
        combined = (own_alpha * mask_alpha + 127) // 255
        alpha = Image.fromarray(combined.astype(np.uint8))

    result = photo.convert("RGB")
    result.putalpha(alpha)
    return result


def encode_png(image: Image.Image) -> bytes:
    buffer = io.BytesIO()
    try:
        image.save(buffer, format="PNG")
    except (OSError, ValueError) as exc:
        raise EncodeError(f"PNG 编码失败: {exc}") from exc
    return buffer.getvalue()
