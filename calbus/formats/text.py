from __future__ import annotations

from .base import BytesLike, Format


class TextFormat(Format[str]):
    """UTF-8 字符串，话题类型与原生字符串发布者保持一致。"""

    tag = "base"

    def __init__(self) -> None:
        super().__init__(str)

    def topic_type(self) -> str:
        return "base:std::string"

    def encode(self, message: str) -> bytes:
        return message.encode("utf-8")

    def decode(self, data: BytesLike) -> str:
        return bytes(data).decode("utf-8")


__all__ = ["TextFormat"]
