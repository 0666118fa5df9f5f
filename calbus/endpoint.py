from __future__ import annotations

import logging
from typing import Generic, TypeVar

from .engine import BusEngine, get_engine, native_string
from .formats.base import Format

logger = logging.getLogger("calbus.endpoint")

T = TypeVar("T")


class TopicEndpoint(Generic[T]):
    """
    Publisher / Subscriber 的公共部分：独占一个总线句柄，只释放一次，禁止复制。
    """

    kind = "endpoint"

    def __init__(self, topic_name: str, fmt: Format[T], engine: BusEngine | None = None) -> None:
        self.topic_name = native_string(topic_name, "topic_name")
        self.format = fmt
        self._engine = engine or get_engine()
        self._handle: int | None = None

    @property
    def handle(self) -> int | None:
        return self._handle

    @property
    def closed(self) -> bool:
        return self._handle is None

    def _native_type_info(self) -> tuple[str, bytes]:
        topic_type = native_string(self.format.topic_type(), "topic_type")
        description = self.format.topic_description()
        return topic_type, native_string(description, "topic_description").encode("utf-8") if description else b""

    def close(self) -> None:
        """释放句柄。可重复调用；构造失败后调用也是安全的。"""
        handle, self._handle = self._handle, None
        if handle is None:
            return
        try:
            self._release(handle)
        except Exception:
            logger.exception(f"释放 {self.kind} 句柄 {handle} ({self.topic_name}) 失败")

    def _release(self, handle: int) -> None:
        raise NotImplementedError

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def __copy__(self):
        raise TypeError(f"{type(self).__name__} owns a bus handle and cannot be copied")

    def __deepcopy__(self, memo):
        raise TypeError(f"{type(self).__name__} owns a bus handle and cannot be copied")

    def __reduce_ex__(self, protocol):
        raise TypeError(f"{type(self).__name__} owns a bus handle and cannot be pickled")

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.topic_name!r}, {self.format!r}, handle={self._handle})"


__all__ = ["TopicEndpoint"]
