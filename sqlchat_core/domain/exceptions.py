"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于在 API 层做统一捕获，并映射为结构化的错误响应。

Provider 相关错误对外只暴露统一前缀 PROVIDER_ERROR_PREFIX，
调用方无法（也不需要）仅凭错误形态区分是哪一家 Provider 失败。
"""

from typing import Optional


PROVIDER_ERROR_PREFIX = "Failed to generate response from AI"

_UNAVAILABLE_MARKERS = (
    "timeout",
    "timed out",
    "connection refused",
    "econnrefused",
    "unreachable",
    "failed to connect",
    "can't connect",
    "could not connect",
    "name or service not known",
    "temporary failure in name resolution",
    "503",
)
_UNAUTHORIZED_MARKERS = (
    "401",
    "403",
    "unauthorized",
    "forbidden",
    "authentication",
    "invalid api key",
    "incorrect api key",
    "access denied",
)
_NOT_FOUND_MARKERS = ("404", "not found", "unknown database", "does not exist")


def infer_http_status(message: str, default: int = 500) -> int:
    """根据错误信息内容推断 HTTP 状态分类（unavailable/unauthorized/not-found/internal）。"""

    text = (message or "").lower()
    if any(marker in text for marker in _UNAVAILABLE_MARKERS):
        return 503
    if any(marker in text for marker in _UNAUTHORIZED_MARKERS):
        return 401
    if any(marker in text for marker in _NOT_FOUND_MARKERS):
        return 404
    return default


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "STORE_READ_ERROR"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 provider、connection_id 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"error": self.code, "code": self.code, "message": self.message}


class ValidationError(BusinessError):
    """参数或配置校验失败。"""

    def __init__(self, message: str, code: str = "VALIDATION_ERROR", **extra):
        super().__init__(code=code, message=message, http_status=400, **extra)


class ProviderError(BusinessError):
    """生成式后端调用失败：不可达、鉴权失败、响应格式错误或超时。

    provider 名称只放在 extra 里用于日志，message 始终是统一前缀 + 底层原因。
    """

    def __init__(self, provider: str, underlying: str, timeout: bool = False):
        self.provider = provider
        self.underlying = underlying
        self.timeout = timeout
        status = 503 if timeout else infer_http_status(underlying)
        super().__init__(
            code="PROVIDER_ERROR",
            message=f"{PROVIDER_ERROR_PREFIX}: {underlying}",
            http_status=status,
            provider=provider,
        )


class UnsupportedProviderError(BusinessError):
    """请求的 Provider 名称不在注册表中（调用方错误）。"""

    def __init__(self, provider: Optional[str]):
        super().__init__(
            code="UNSUPPORTED_PROVIDER",
            message=f"Unsupported provider: {provider!r}",
            http_status=400,
            provider=provider,
        )


class ConnectionNotFoundError(BusinessError):
    """找不到对应的数据库连接记录。"""

    def __init__(self, connection_id):
        super().__init__(
            code="CONNECTION_NOT_FOUND",
            message=f"Database connection not found for id: {connection_id}",
            http_status=404,
            connection_id=connection_id,
        )


class UnsupportedDriverError(BusinessError):
    """连接记录里的 driver 不在支持列表中。"""

    def __init__(self, driver: Optional[str]):
        super().__init__(
            code="UNSUPPORTED_DRIVER",
            message=f"Unsupported database driver: {driver}",
            http_status=400,
            driver=driver,
        )


class QueryExecutionError(BusinessError):
    """数据库驱动报告的 SQL 执行失败。"""

    def __init__(self, underlying: str, **extra):
        super().__init__(
            code="QUERY_EXECUTION_ERROR",
            message=f"Query execution failed: {underlying}",
            http_status=infer_http_status(underlying),
            **extra,
        )


class SchemaIntrospectionError(BusinessError):
    """导出数据库 schema 失败。"""

    def __init__(self, underlying: str, **extra):
        super().__init__(
            code="SCHEMA_INTROSPECTION_ERROR",
            message=f"Failed to get schema: {underlying}",
            http_status=500,
            **extra,
        )


class ConfirmationRequiredError(BusinessError):
    """带副作用的 SQL 在调用方确认之前不会被执行。"""

    def __init__(self, classification: str):
        super().__init__(
            code="CONFIRMATION_REQUIRED",
            message="Statement may modify data and must be confirmed before execution",
            http_status=409,
            classification=classification,
        )

    def to_dict(self) -> dict:
        payload = super().to_dict()
        payload["classification"] = self.extra.get("classification")
        return payload


class StoreError(BusinessError):
    """持久化层读写失败。"""

    def __init__(self, code: str, message: str, http_status: int = 500):
        super().__init__(code=code, message=message, http_status=http_status)
