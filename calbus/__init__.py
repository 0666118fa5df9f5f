"""
calbus：进程内发布/订阅总线之上的类型化客户端。

导出生命周期守卫、类型化 Publisher / Subscriber、可插拔线格式、回调桥以及监控接口。
"""

__version__ = "0.1.0"

from . import engine, formats
from .bridge import CallbackSlot
from .cal import Cal, NodeState, SeverityLevel, healthy, sleep
from .config import CalConfig
from .engine import BusEngine, get_engine
from .errors import (
    CalError,
    FormatError,
    InitializationFailed,
    InvalidFormat,
    PublishFailed,
    PublisherCreationFailed,
    SubscriberCreationFailed,
    Timeout,
)
from .formats import Format, JsonFormat, MsgpackFormat, ProtobufFormat, TextFormat
from .messages import message, type_name_of
from .monitor import MonitorOptions, MonitorServer
from .publisher import CURRENT_TIME, Publisher, PublisherEvent
from .subscriber import ReceiveData, Subscriber

__all__ = [
    # Lifecycle
    "Cal",
    "CalConfig",
    "NodeState",
    "SeverityLevel",
    "healthy",
    "sleep",
    # Engine
    "engine",
    "BusEngine",
    "get_engine",
    # Errors
    "CalError",
    "FormatError",
    "InitializationFailed",
    "InvalidFormat",
    "PublishFailed",
    "PublisherCreationFailed",
    "SubscriberCreationFailed",
    "Timeout",
    # Formats / messages
    "formats",
    "Format",
    "JsonFormat",
    "MsgpackFormat",
    "ProtobufFormat",
    "TextFormat",
    "message",
    "type_name_of",
    # Pub / sub
    "CallbackSlot",
    "CURRENT_TIME",
    "Publisher",
    "PublisherEvent",
    "ReceiveData",
    "Subscriber",
    # Monitoring
    "MonitorOptions",
    "MonitorServer",
]
