"""
测试 formats / messages 模块：线格式契约与消息类型声明
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, TypedDict

import msgpack
import orjson
import pytest
from google.protobuf import wrappers_pb2

from calbus import FormatError, JsonFormat, MsgpackFormat, ProtobufFormat, TextFormat, message, type_name_of
from calbus.formats import Format
from calbus.messages import from_dict, to_dict


@message(type_prefix="kpns_msgs.")
@dataclass
class Ping:
    sync: int


@message(type_name="Position", type_prefix="geo.")
@dataclass
class Point:
    x: float
    y: float


@message
@dataclass
class Track:
    name: str
    points: List[Point] = field(default_factory=list)
    origin: Optional[Point] = None
    tags: dict = field(default_factory=dict)


@dataclass
class Undeclared:
    value: int


class Envelope(TypedDict):
    id: str
    body: str


# ============================================================
# 测试消息类型声明
# ============================================================

class TestMessageDeclaration:
    """测试 @message 与类型名"""

    def test_prefix_and_class_name(self):
        assert type_name_of(Ping) == "kpns_msgs.Ping"

    def test_explicit_type_name(self):
        assert type_name_of(Point) == "geo.Position"

    def test_bare_decorator(self):
        assert type_name_of(Track) == "Track"

    def test_undeclared_falls_back_to_class_name(self):
        assert type_name_of(Undeclared) == "Undeclared"

    def test_protobuf_uses_full_name(self):
        assert type_name_of(wrappers_pb2.UInt64Value) == "google.protobuf.UInt64Value"

    def test_subclass_does_not_inherit_declared_name(self):
        class Child(Ping):
            pass

        assert type_name_of(Child) == "Child"

    def test_nul_in_type_name_rejected(self):
        with pytest.raises(ValueError):
            message(type_name="Bad\x00Name")(Undeclared)


class TestDictConversion:
    """测试 dataclass 与字典的互转"""

    def test_nested_dataclasses(self):
        track = Track(name="t", points=[Point(1.0, 2.0)], origin=Point(0.0, 0.0), tags={"a": 1})
        assert from_dict(Track, to_dict(track)) == track

    def test_unknown_field_rejected(self):
        with pytest.raises(FormatError):
            from_dict(Ping, {"sync": 1, "extra": 2})

    def test_missing_field_rejected(self):
        with pytest.raises(FormatError):
            from_dict(Ping, {})

    def test_non_map_rejected(self):
        with pytest.raises(FormatError):
            from_dict(Ping, [1, 2])

    def test_typed_dict_passthrough(self):
        data = {"id": "1", "body": "hi"}
        assert from_dict(Envelope, data) == data

    def test_to_dict_rejects_plain_objects(self):
        with pytest.raises(TypeError):
            to_dict(object())


# ============================================================
# 测试 Format 契约
# ============================================================

class TestTopicType:
    """测试话题类型字符串"""

    @pytest.mark.parametrize(
        "fmt, expected",
        [
            (JsonFormat(Ping), "json:kpns_msgs.Ping"),
            (MsgpackFormat(Ping), "mpack:kpns_msgs.Ping"),
            (ProtobufFormat(wrappers_pb2.UInt64Value), "proto:google.protobuf.UInt64Value"),
            (TextFormat(), "base:std::string"),
        ],
    )
    def test_topic_type(self, fmt: Format, expected: str):
        assert fmt.topic_type() == expected

    def test_deterministic_across_instances(self):
        assert MsgpackFormat(Ping).topic_type() == MsgpackFormat(Ping).topic_type()
        assert MsgpackFormat(Ping) == MsgpackFormat(Ping)
        assert MsgpackFormat(Ping) != JsonFormat(Ping)

    def test_schemaless_formats_have_no_description(self):
        assert JsonFormat(Ping).topic_description() is None
        assert MsgpackFormat(Ping).topic_description() is None
        assert TextFormat().topic_description() is None

    def test_protobuf_description(self):
        description = ProtobufFormat(wrappers_pb2.UInt64Value).topic_description()
        assert description is not None
        assert "google/protobuf/wrappers.proto" in description
        assert "UInt64Value" in description


class TestRoundTrip:
    """测试各格式的编解码往返"""

    @pytest.mark.parametrize("fmt_cls", [JsonFormat, MsgpackFormat])
    def test_nested_dataclass(self, fmt_cls):
        fmt = fmt_cls(Track)
        track = Track(name="route", points=[Point(1.5, 2.5), Point(3.0, 4.0)], origin=None, tags={"k": "v"})
        buf = bytearray()
        fmt.serialize(track, buf)
        assert fmt.deserialize(bytes(buf)) == track

    def test_protobuf(self):
        fmt = ProtobufFormat(wrappers_pb2.UInt64Value)
        buf = bytearray()
        fmt.serialize(wrappers_pb2.UInt64Value(value=42), buf)
        assert fmt.deserialize(memoryview(buf)).value == 42

    def test_text(self):
        fmt = TextFormat()
        buf = bytearray()
        fmt.serialize("héllo", buf)
        assert fmt.deserialize(buf) == "héllo"

    def test_json_wire_is_plain_json(self):
        buf = bytearray()
        JsonFormat(Ping).serialize(Ping(sync=3), buf)
        assert orjson.loads(buf) == {"sync": 3}

    def test_msgpack_wire_is_plain_map(self):
        buf = bytearray()
        MsgpackFormat(Ping).serialize(Ping(sync=3), buf)
        assert msgpack.unpackb(bytes(buf)) == {"sync": 3}


class TestSerializeContract:
    """测试序列化追加语义与错误"""

    def test_appends_to_existing_buffer(self):
        buf = bytearray(b"head")
        MsgpackFormat(Ping).serialize(Ping(sync=1), buf)
        assert buf.startswith(b"head")
        assert msgpack.unpackb(bytes(buf[4:])) == {"sync": 1}

    def test_failure_leaves_buffer_untouched(self):
        buf = bytearray(b"head")
        with pytest.raises(FormatError):
            MsgpackFormat(Ping).serialize(Ping(sync=object()), buf)
        assert buf == bytearray(b"head")

    def test_wrong_type_rejected(self):
        buf = bytearray()
        with pytest.raises(FormatError):
            JsonFormat(Ping).serialize(Point(1.0, 2.0), buf)
        assert buf == bytearray()

    @pytest.mark.parametrize(
        "fmt, payload",
        [
            (JsonFormat(Ping), b"{not json"),
            (JsonFormat(Ping), b'{"other": 1}'),
            (MsgpackFormat(Ping), b"\xc1"),
            (MsgpackFormat(Ping), msgpack.packb([1, 2, 3])),
            (ProtobufFormat(wrappers_pb2.UInt64Value), b"\x08"),
            (TextFormat(), b"\xff\xfe\xfd"),
        ],
    )
    def test_malformed_input_raises_format_error(self, fmt: Format, payload: bytes):
        with pytest.raises(FormatError):
            fmt.deserialize(payload)

    def test_format_error_keeps_cause(self):
        with pytest.raises(FormatError) as info:
            JsonFormat(Ping).deserialize(b"{not json")
        assert isinstance(info.value.__cause__, orjson.JSONDecodeError)


class TestCustomFormat:
    """新增编码只需实现 encode / decode"""

    def test_custom_format(self):
        class CsvFormat(Format[Point]):
            tag = "csv"

            def encode(self, message: Point) -> bytes:
                return f"{message.x},{message.y}".encode()

            def decode(self, data) -> Point:
                x, y = bytes(data).decode().split(",")
                return Point(float(x), float(y))

        fmt = CsvFormat(Point)
        buf = bytearray()
        fmt.serialize(Point(1.0, 2.0), buf)
        assert fmt.topic_type() == "csv:geo.Position"
        assert fmt.deserialize(buf) == Point(1.0, 2.0)
        with pytest.raises(FormatError):
            fmt.deserialize(b"garbage")
