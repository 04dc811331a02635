"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于在 API 层或 UI 层做统一捕获与用户提示。
"""


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "STORE_WRITE_ERROR"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 conversation_id、backend 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class NetworkError(BusinessError):
    """网络层错误，例如连接失败、超时、流被中断等。"""


class ApiError(BusinessError):
    """后端返回非 2xx/429 错误，或返回了无法使用的响应（如空回答）。"""


class RateLimitError(BusinessError):
    """后端限流错误。核心层不做自动重试，由用户或连接恢复触发重发。"""


class ValidationError(BusinessError):
    """参数或配置校验失败（空消息、缺少模型名等），不会产生任何状态变更。"""


class StorageError(BusinessError):
    """持久化读写失败。必须向上抛出，提示用户消息可能没有保存成功。"""


class NotFoundError(BusinessError):
    """会话或消息不存在。"""

    def __init__(self, code: str, message: str, **extra):
        super().__init__(code, message, http_status=404, **extra)


class QueueFullError(BusinessError):
    """离线队列已满。"""


class AttachmentError(BusinessError):
    """附件无法编码为后端请求格式，只影响当前这条消息。"""
