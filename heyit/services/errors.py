"""
生成服务异常定义与用户可读的错误信息转换
"""
import httpx


class GenerationError(Exception):
    """生成相关异常基类，message即面向用户的提示"""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(GenerationError):
    """调用后端之前的输入校验失败"""


class NotFoundError(GenerationError):
    """目标图片、风格或批量条目不存在"""


class BusyError(GenerationError):
    """批量生成正在运行，拒绝冲突操作"""


class GatewayError(GenerationError):
    """生成后端返回的错误"""


class BlockedError(GatewayError):
    """请求被安全策略拦截"""


class NoArtifactError(GatewayError):
    """后端没有返回任何可用图片"""


class RateLimitError(GatewayError):
    """配额用尽或触发限流"""


class ServerError(GatewayError):
    """后端服务器错误"""


class FormatError(GatewayError):
    """结构化响应格式错误或数量不符"""


class EmptyDescriptionError(GatewayError):
    """风格分析没有返回描述"""


QUOTA_MESSAGE = "API 配额已用尽。请检查您的 Google AI 计划和账单详情。"
SERVER_MESSAGE = "生成失败 (服务器错误)。请检查您的 API 密钥设置或稍后重试。"
UNKNOWN_MESSAGE = "发生未知错误。请稍后再试。"

_QUOTA_MARKERS = ("429", "RESOURCE_EXHAUSTED", "quota")


def describe_error(exc: BaseException) -> str:
    """
    将任意异常转换为稳定的、可展示给用户的错误信息

    Args:
        exc: 捕获到的异常

    Returns:
        错误信息
    """
    if isinstance(exc, RateLimitError):
        return QUOTA_MESSAGE
    if isinstance(exc, ServerError):
        return SERVER_MESSAGE
    if isinstance(exc, GenerationError):
        return exc.message
    if isinstance(exc, httpx.TimeoutException):
        return "请求生成服务超时，请稍后重试。"
    if isinstance(exc, httpx.HTTPError):
        return f"无法连接生成服务: {exc}"

    text = str(exc)
    if any(marker in text for marker in _QUOTA_MARKERS):
        return QUOTA_MESSAGE
    return text or UNKNOWN_MESSAGE
