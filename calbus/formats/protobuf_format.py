from __future__ import annotations

import logging
from typing import TypeVar

from google.protobuf import descriptor_pb2, text_format
from google.protobuf.message import Message as ProtoMessage

from .base import BytesLike, Format

logger = logging.getLogger("calbus.formats")

T = TypeVar("T", bound=ProtoMessage)


class ProtobufFormat(Format[T]):
    """
    Protocol Buffers 编码。

    类型名默认取 ``DESCRIPTOR.full_name``，话题描述是消息所在 .proto 文件的
    FileDescriptorProto 文本形式。
    """

    tag = "proto"

    def topic_description(self) -> str | None:
        try:
            file_proto = descriptor_pb2.FileDescriptorProto()
            self.message_type.DESCRIPTOR.file.CopyToProto(file_proto)
            return text_format.MessageToString(file_proto)
        except Exception:
            logger.exception(f"无法生成 {self.message_type.__name__} 的话题描述")
            return None

    def encode(self, message: T) -> bytes:
        return message.SerializeToString()

    def decode(self, data: BytesLike) -> T:
        return self.message_type.FromString(bytes(data))


__all__ = ["ProtobufFormat"]
