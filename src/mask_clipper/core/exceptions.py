"""项目内使用的自定义异常定义。"""


class MaskClipperError(Exception):
    """基础异常类型。"""


class InvalidConfigurationError(MaskClipperError):
    """配置不合法时抛出。"""


class PreconditionFailed(MaskClipperError):
    """启动任务的前置条件不满足（未设置输出目录或文件列表为空）。"""


class InvalidState(MaskClipperError):
    """在当前状态下不允许执行该操作。"""


class PredictionError(MaskClipperError):
    """蒙版生成失败。"""


class DecodeError(MaskClipperError):
    """图片无法解码。"""


class EncodeError(MaskClipperError):
    """结果图片编码失败。"""


class FileWriteError(MaskClipperError):
    """输出写入失败。"""
