from __future__ import annotations

import abc
import typing
from typing import Any, Generic, Mapping, Type, TypeVar

from ..errors import FormatError
from ..messages import type_name_of

T = TypeVar("T")

BytesLike = typing.Union[bytes, bytearray, memoryview]


class Format(abc.ABC, Generic[T]):
    """
    线格式策略：绑定一个消息类型，负责命名、描述、序列化与反序列化。

    新增一种编码只需要继承本类并实现 encode / decode，Publisher / Subscriber
    不需要任何改动。
    """

    tag: str = ""

    def __init__(self, message_type: Type[T]) -> None:
        self.message_type = message_type

    def topic_type(self) -> str:
        """编码标签 + 消息类型全名，例如 ``mpack:kpns_msgs.Ping``。"""
        return f"{self.tag}:{type_name_of(self.message_type)}"

    def topic_description(self) -> str | None:
        """供监控工具使用的模式描述，不支持的格式返回 None。"""
        return None

    def serialize(self, message: T, buffer: bytearray) -> None:
        """把消息追加到 buffer 末尾；失败时 buffer 保持原样。"""
        self._check_instance(message)
        try:
            encoded = self.encode(message)
        except FormatError:
            raise
        except Exception as exc:
            raise FormatError(f"{self.tag}: failed to encode {type(message).__name__}: {exc}") from exc
        buffer += encoded

    def deserialize(self, data: BytesLike) -> T:
        try:
            return self.decode(data)
        except FormatError:
            raise
        except Exception as exc:
            raise FormatError(f"{self.tag}: failed to decode {self.message_type.__name__}: {exc}") from exc

    @abc.abstractmethod
    def encode(self, message: T) -> bytes:
        raise NotImplementedError

    @abc.abstractmethod
    def decode(self, data: BytesLike) -> T:
        raise NotImplementedError

    def _check_instance(self, message: Any) -> None:
        expected = self.message_type
        if expected is dict or typing.is_typeddict(expected):
            ok = isinstance(message, Mapping)
        else:
            ok = isinstance(message, expected)
        if not ok:
            raise FormatError(f"{self.tag}: expected {expected.__name__}, got {type(message).__name__}")

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Format):
            return NotImplemented
        return type(self) is type(other) and self.message_type is other.message_type

    def __hash__(self) -> int:
        return hash((type(self), self.message_type))

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message_type.__name__})"


__all__ = ["BytesLike", "Format"]
