"""可插拔的线格式。"""

from .base import BytesLike, Format
from .json_format import JsonFormat
from .msgpack_format import MsgpackFormat
from .protobuf_format import ProtobufFormat
from .text import TextFormat

__all__ = [
    "BytesLike",
    "Format",
    "JsonFormat",
    "MsgpackFormat",
    "ProtobufFormat",
    "TextFormat",
]
