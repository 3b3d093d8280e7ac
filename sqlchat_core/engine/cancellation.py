"""进程级取消协调器。

流水线启动时 register(key) 取得一个 CancellationToken，在每个安全让出点
（每个 token 之后、每行之后）检查 token.cancelled；调用方通过 cancel(key)
置位。流水线以任何路径结束时 clear(key, token)，防止注册表无限增长。

这里只是协作式标志，不会中断底层的网络调用或数据库语句。
"""

import threading
from typing import Dict, Optional


class CancellationToken:
    """单条流水线的取消标志。只有 CancellationRegistry 会写它。"""

    __slots__ = ("key", "_event")

    def __init__(self, key: str):
        self.key = key
        self._event = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def _set(self) -> None:
        self._event.set()

    def __repr__(self) -> str:
        return f"CancellationToken(key={self.key!r}, cancelled={self.cancelled})"


class CancellationRegistry:
    """key -> CancellationToken 的注册表，所有访问都在互斥锁内完成。"""

    def __init__(self):
        self._lock = threading.Lock()
        self._tokens: Dict[str, CancellationToken] = {}

    def register(self, key: str) -> CancellationToken:
        """为 key 创建新 token；同 key 的旧注册会被覆盖。"""
        token = CancellationToken(str(key))
        with self._lock:
            self._tokens[token.key] = token
        return token

    def cancel(self, key: str) -> bool:
        """置位 key 对应的取消标志；key 未注册时返回 False（尽力而为）。"""
        with self._lock:
            token = self._tokens.get(str(key))
            if token is None:
                return False
            token._set()
            return True

    def is_cancelled(self, key: str) -> bool:
        with self._lock:
            token = self._tokens.get(str(key))
            return token is not None and token.cancelled

    def clear(self, key: str, token: Optional[CancellationToken] = None) -> None:
        """移除 key 的注册。

        传入 token 时只在当前注册就是这个 token 时才移除，避免旧流水线
        结束时误删同 key 上新流水线的注册。
        """
        with self._lock:
            current = self._tokens.get(str(key))
            if current is None:
                return
            if token is not None and current is not token:
                return
            del self._tokens[str(key)]

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return str(key) in self._tokens

    def __len__(self) -> int:
        with self._lock:
            return len(self._tokens)


# 进程级单例，会话流水线与查询流水线共用
registry = CancellationRegistry()
