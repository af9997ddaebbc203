"""错误分类：致命错误直接上抛，软性缺失由调用方显式回退。"""

from __future__ import annotations


class VidStructError(Exception):
    """所有结构分析错误的基类，CLI 统一捕获并以非零码退出。"""


class DimensionMismatchError(VidStructError, ValueError):
    """相似度计算时向量/哈希长度不一致。"""


class UnknownMarkerLabelError(VidStructError):
    """SMPTE 标签表中不存在的标签，属于配置错误。"""


class FrameNumberingError(VidStructError):
    """帧号顺序或边界细化插帧越界，说明帧编号已损坏。"""


class FrameNotFoundError(VidStructError):
    """帧表中找不到引用的帧。"""


class BailoutExceededError(VidStructError):
    """边界细化重试次数超出上限，不再继续重试。"""


class EmptyInputError(VidStructError):
    """必需输入为空，例如生成场景输出时没有任何结构元素。"""


class DocumentFormatError(VidStructError, ValueError):
    """JSON 文档字段缺失或包含未知字段。"""


class AnalysisUnavailableError(VidStructError):
    """外部语义分析暂不可用；分类器记录告警后走启发式回退。"""


class DocumentNotFoundError(VidStructError, FileNotFoundError):
    """存储中不存在所需文档。"""
