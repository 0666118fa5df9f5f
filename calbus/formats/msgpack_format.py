from __future__ import annotations

from typing import TypeVar

import msgpack

from ..messages import from_dict, to_dict
from .base import BytesLike, Format

T = TypeVar("T")


class MsgpackFormat(Format[T]):
    """MessagePack 编码。无模式，因此没有话题描述。"""

    tag = "mpack"

    def encode(self, message: T) -> bytes:
        return msgpack.packb(to_dict(message), use_bin_type=True)

    def decode(self, data: BytesLike) -> T:
        return from_dict(self.message_type, msgpack.unpackb(data, raw=False))


__all__ = ["MsgpackFormat"]
