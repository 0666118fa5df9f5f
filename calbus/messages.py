"""
消息类型声明。

任意类都可以作为消息类型；``@message`` 只负责给它一个稳定的类型名，供 Format 拼出
话题类型字符串。JSON / MessagePack 等无模式格式通过 to_dict / from_dict 在 dataclass
与基础类型之间转换。
"""

from __future__ import annotations

import dataclasses
import types
import typing
from typing import Any, Callable, Dict, Mapping, Type, TypeVar, overload

from .engine import native_string
from .errors import FormatError

T = TypeVar("T")

_TYPE_NAME_ATTR = "__calbus_type_name__"


@overload
def message(cls: Type[T]) -> Type[T]: ...


@overload
def message(
    cls: None = None, *, type_name: str | None = None, type_prefix: str = ""
) -> Callable[[Type[T]], Type[T]]: ...


def message(cls=None, *, type_name=None, type_prefix=""):
    """
    声明消息类型名。

    Usages:
    - @message
    - @message(type_prefix="kpns_msgs.")
    - @message(type_name="Ping", type_prefix="kpns_msgs.")
    """

    def decorator(target: Type[T]) -> Type[T]:
        name = type_name or target.__name__
        full_name = native_string(f"{type_prefix}{name}", "type_name")
        setattr(target, _TYPE_NAME_ATTR, full_name)
        return target

    if cls is not None:
        return decorator(cls)
    return decorator


def type_name_of(cls: type) -> str:
    """返回消息类型名：显式声明 > protobuf 全名 > 类名。"""
    declared = cls.__dict__.get(_TYPE_NAME_ATTR)
    if declared:
        return declared
    descriptor = getattr(cls, "DESCRIPTOR", None)
    full_name = getattr(descriptor, "full_name", None)
    if isinstance(full_name, str) and full_name:
        return full_name
    return cls.__name__


def to_dict(value: Any) -> Dict[str, Any]:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    if isinstance(value, Mapping):
        return dict(value)
    raise TypeError(f"cannot convert {type(value).__name__} to a message dict")


def from_dict(cls: Type[T], data: Any) -> T:
    """把解码出的字典还原为消息类型，字段不匹配时抛出 FormatError。"""
    if not isinstance(data, dict):
        raise FormatError(f"expected a map for {cls.__name__}, got {type(data).__name__}")
    if cls is dict or typing.is_typeddict(cls):
        return data  # type: ignore[return-value]
    if not dataclasses.is_dataclass(cls):
        raise TypeError(f"{cls.__name__} is neither a dataclass nor a dict type")

    try:
        hints = typing.get_type_hints(cls)
    except Exception:
        hints = {}
    init_fields = {f.name: f for f in dataclasses.fields(cls) if f.init}
    unknown = set(data) - set(init_fields)
    if unknown:
        raise FormatError(f"unexpected fields for {cls.__name__}: {sorted(unknown)}")

    kwargs: Dict[str, Any] = {}
    for name, value in data.items():
        kwargs[name] = _convert(hints.get(name, init_fields[name].type), value)
    try:
        return cls(**kwargs)
    except TypeError as exc:
        raise FormatError(f"cannot build {cls.__name__}: {exc}") from exc


def _convert(hint: Any, value: Any) -> Any:
    if isinstance(hint, type) and dataclasses.is_dataclass(hint):
        return from_dict(hint, value) if value is not None else None
    origin = typing.get_origin(hint)
    args = typing.get_args(hint)
    if origin in (typing.Union, types.UnionType):
        nested = [a for a in args if isinstance(a, type) and dataclasses.is_dataclass(a)]
        if nested and isinstance(value, dict):
            return from_dict(nested[0], value)
        return value
    if origin in (list, tuple) and args and isinstance(value, (list, tuple)):
        converted = [_convert(args[0], item) for item in value]
        return converted if origin is list else tuple(converted)
    return value


__all__ = ["from_dict", "message", "to_dict", "type_name_of"]
