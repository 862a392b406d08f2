"""输出文件命名规则。"""

from __future__ import annotations

OUTPUT_SUFFIX = "-clipped"
OUTPUT_EXTENSION = ".png"


def derive_output_name(original_name: str) -> str:
    """去掉最后一个扩展名，追加 ``-clipped.png``。

    不做冲突检测，同名输入总是得到同名输出。
    """

    stem, dot, _extension = original_name.rpartition(".")
    if not dot or not stem:
        # 没有扩展名，或是 ".bashrc" 这类隐藏文件名
        stem = original_name
    return f"{stem}{OUTPUT_SUFFIX}{OUTPUT_EXTENSION}"
