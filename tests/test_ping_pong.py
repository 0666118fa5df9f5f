"""
端到端场景：ping / pong 两端在同一进程内通过总线往返
"""
from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Callable

import pytest
from google.protobuf import wrappers_pb2

from calbus import (
    BusEngine,
    Cal,
    Format,
    JsonFormat,
    MsgpackFormat,
    ProtobufFormat,
    Publisher,
    Subscriber,
    healthy,
    message,
    sleep,
)

PING_TOPIC = "/kpns/demo/ping"
PONG_TOPIC = "/kpns/demo/pong"
ROUNDS = 10


@message(type_prefix="kpns_msgs.")
@dataclass
class Ping:
    sync: int


@message(type_prefix="kpns_msgs.")
@dataclass
class Pong:
    sync: int


@dataclass
class Wire:
    """一种线格式下 ping / pong 消息的构造与读取方式"""

    ping_format: Format
    pong_format: Format
    make_ping: Callable[[int], Any]
    make_pong: Callable[[int], Any]


WIRES = {
    "msgpack": Wire(MsgpackFormat(Ping), MsgpackFormat(Pong), Ping, Pong),
    "json": Wire(JsonFormat(Ping), JsonFormat(Pong), Ping, Pong),
    "protobuf": Wire(
        ProtobufFormat(wrappers_pb2.UInt64Value),
        ProtobufFormat(wrappers_pb2.UInt64Value),
        lambda n: wrappers_pb2.UInt64Value(value=n),
        lambda n: wrappers_pb2.UInt64Value(value=n),
    ),
}


def sync_of(msg: Any) -> int:
    return msg.sync if hasattr(msg, "sync") else msg.value


def pong_main(engine: BusEngine, wire: Wire, stop: threading.Event, seen: list[int]) -> None:
    with Publisher(PONG_TOPIC, wire.pong_format, engine=engine) as publisher, Subscriber(
        PING_TOPIC, wire.ping_format, engine=engine
    ) as subscriber:
        while not stop.is_set() and healthy(engine):
            ping = subscriber.try_recv(0.05)
            if ping is not None:
                seen.append(sync_of(ping))
                publisher.send(wire.make_pong(sync_of(ping) + 1))


@pytest.mark.parametrize("wire_name", list(WIRES))
def test_ping_pong(engine: BusEngine, wire_name: str):
    wire = WIRES[wire_name]
    stop = threading.Event()
    pong_seen: list[int] = []
    ping_seen: list[int] = []

    with Cal("calbus_ping", engine=engine, argv=[]):
        ponger = threading.Thread(target=pong_main, args=(engine, wire, stop, pong_seen))
        with Publisher(PING_TOPIC, wire.ping_format, engine=engine) as publisher, Subscriber(
            PONG_TOPIC, wire.pong_format, engine=engine
        ) as subscriber:
            ponger.start()
            sync = 1
            for _ in range(ROUNDS * 20):
                if len(ping_seen) >= ROUNDS:
                    break
                publisher.send(wire.make_ping(sync))
                pong = subscriber.try_recv(0.1)
                # 重发 ping 时可能收到过期的 pong
                if pong is not None and sync_of(pong) > sync:
                    ping_seen.append(sync_of(pong))
                    sync = sync_of(pong)
                elif pong is None:
                    sleep(0.01, engine)
            stop.set()
            ponger.join(2.0)

    assert not ponger.is_alive()
    assert len(ping_seen) >= ROUNDS
    assert ping_seen == sorted(set(ping_seen))
    assert ping_seen[:3] == [2, 3, 4]
    # 重发时 pong 端可能看到重复的 ping，但看到的值不会倒退
    assert pong_seen == sorted(pong_seen)
    assert pong_seen[0] == 1
