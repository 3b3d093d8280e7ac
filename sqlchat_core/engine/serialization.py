"""把驱动返回的原始列值转换为 JSON 兼容的值。

- Decimal、UUID、timedelta → 字符串
- date / time / datetime → ISO-8601
- 超出 JSON 安全整数范围（±2**53）的整数 → 字符串
- bytes → UTF-8 文本；不是合法 UTF-8 时用 base64
- 字符串原样保留；JSON 列由驱动在产出行之前解码，这里只处理解码后的 dict/list
"""

import base64
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Any, Dict, Mapping
from uuid import UUID


_MAX_SAFE_INTEGER = 2 ** 53 - 1


def _decode_bytes(raw: bytes) -> str:
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError:
        return base64.b64encode(raw).decode("ascii")


def to_jsonable(value: Any) -> Any:
    if value is None or isinstance(value, (bool, float, str)):
        return value
    if isinstance(value, int):
        return str(value) if abs(value) > _MAX_SAFE_INTEGER else value
    if isinstance(value, (bytes, bytearray, memoryview)):
        return _decode_bytes(bytes(value))
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, (Decimal, UUID, timedelta)):
        return str(value)
    if isinstance(value, Mapping):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [to_jsonable(v) for v in value]
    return str(value)


def serialize_row(row: Mapping[str, Any]) -> Dict[str, Any]:
    """按列顺序转换一行；列名保持原样。"""

    return {str(column): to_jsonable(value) for column, value in row.items()}
