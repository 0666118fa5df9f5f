from __future__ import annotations

from typing import TypeVar

import orjson

from ..messages import from_dict
from .base import BytesLike, Format

T = TypeVar("T")


class JsonFormat(Format[T]):
    """基于 orjson 的 JSON 编码，消息类型为 dataclass 或 dict。"""

    tag = "json"

    def encode(self, message: T) -> bytes:
        return orjson.dumps(message, option=orjson.OPT_NON_STR_KEYS)

    def decode(self, data: BytesLike) -> T:
        return from_dict(self.message_type, orjson.loads(data))


__all__ = ["JsonFormat"]
