"""
进程级生命周期守卫。

``Cal`` 负责总线的初始化与终止以及进程健康状态上报。它必须先于所有 Publisher /
Subscriber 创建、晚于它们关闭；终止之后引擎会拒绝新建句柄。
"""

from __future__ import annotations

import enum
import logging
import sys
from datetime import timedelta
from typing import Dict, Sequence, Tuple

from .config import CalConfig
from .engine import (
    INIT_ALL,
    INIT_DEFAULT,
    BusEngine,
    ProcessSeverity,
    ProcessSeverityLevel,
    get_engine,
    native_string,
)
from .errors import InitializationFailed

logger = logging.getLogger("calbus.cal")


class NodeState(enum.Enum):
    HEALTHY = "healthy"
    CRITICAL = "critical"
    FAILED = "failed"
    UNKNOWN = "unknown"
    WARNING = "warning"


class SeverityLevel(enum.Enum):
    LEVEL1 = 1
    LEVEL2 = 2
    LEVEL3 = 3
    LEVEL4 = 4
    LEVEL5 = 5


NODE_STATE_TO_SEVERITY: Dict[NodeState, ProcessSeverity] = {
    NodeState.HEALTHY: ProcessSeverity.HEALTHY,
    NodeState.CRITICAL: ProcessSeverity.CRITICAL,
    NodeState.FAILED: ProcessSeverity.FAILED,
    NodeState.UNKNOWN: ProcessSeverity.UNKNOWN,
    NodeState.WARNING: ProcessSeverity.WARNING,
}

SEVERITY_LEVEL_TO_NATIVE: Dict[SeverityLevel, ProcessSeverityLevel] = {
    SeverityLevel.LEVEL1: ProcessSeverityLevel.LEVEL1,
    SeverityLevel.LEVEL2: ProcessSeverityLevel.LEVEL2,
    SeverityLevel.LEVEL3: ProcessSeverityLevel.LEVEL3,
    SeverityLevel.LEVEL4: ProcessSeverityLevel.LEVEL4,
    SeverityLevel.LEVEL5: ProcessSeverityLevel.LEVEL5,
}

_SEVERITY_TO_NODE_STATE = {native: state for state, native in NODE_STATE_TO_SEVERITY.items()}
_NATIVE_TO_SEVERITY_LEVEL = {native: level for level, native in SEVERITY_LEVEL_TO_NATIVE.items()}


class Cal:
    """
    总线生命周期守卫，支持 with 语句。

    Args:
        unit_name: 进程在监控中显示的名字。
        config: 引擎配置；总线已初始化时会被忽略。
        argv: 进程参数，默认 sys.argv。
        engine: 使用的引擎，默认进程级引擎。
    """

    def __init__(
        self,
        unit_name: str,
        *,
        config: CalConfig | None = None,
        argv: Sequence[str] | None = None,
        engine: BusEngine | None = None,
    ) -> None:
        native_string(unit_name, "unit_name")
        self.unit_name = unit_name
        self._engine = engine or get_engine()
        self._closed = True
        _initialize(self._engine, unit_name, list(sys.argv if argv is None else argv), config)
        self._closed = False
        try:
            self.set_state(NodeState.HEALTHY, SeverityLevel.LEVEL1, "ok")
        except Exception:
            self.close()
            raise

    @property
    def engine(self) -> BusEngine:
        return self._engine

    @property
    def closed(self) -> bool:
        return self._closed

    def set_state(self, state: NodeState, level: SeverityLevel, message: str) -> None:
        """设置进程状态。message 含有 NUL 时抛出 ValueError。"""
        self._engine.process_set_state(
            NODE_STATE_TO_SEVERITY[state],
            SEVERITY_LEVEL_TO_NATIVE[level],
            native_string(message, "message"),
        )

    @property
    def state(self) -> Tuple[NodeState, SeverityLevel, str]:
        severity, level, info = self._engine.process_get_state()
        return _SEVERITY_TO_NODE_STATE[severity], _NATIVE_TO_SEVERITY_LEVEL[level], info

    def close(self) -> None:
        """终止总线。可重复调用，终止过程中的错误只记录日志。"""
        if self._closed:
            return
        self._closed = True
        try:
            _finalize(self._engine)
        except Exception:
            logger.exception(f"终止总线失败 ({self.unit_name})")

    def __enter__(self) -> "Cal":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def __repr__(self) -> str:
        status = "closed" if self._closed else "active"
        return f"Cal({self.unit_name!r}, {status})"


def _initialize(engine: BusEngine, unit_name: str, argv: list[str], config: CalConfig | None) -> None:
    status = engine.initialize(argv, unit_name, INIT_DEFAULT, config)
    if status == -1:
        logger.error("Failed to initialize bus")
        raise InitializationFailed(unit_name)
    if status == 0:
        logger.info(f"总线已初始化为 '{unit_name}'")
    elif status == 1:
        logger.warning("总线已经初始化过")
    else:
        logger.warning(f"Unexpected status returned from bus initialize: {status}")


def _finalize(engine: BusEngine) -> None:
    logger.debug("Finalizing bus.")
    engine.finalize(INIT_ALL)


def healthy(engine: BusEngine | None = None) -> bool:
    """总线此刻是否可用。每次调用都会询问引擎，适合在循环条件中使用。"""
    status = (engine or get_engine()).process_is_ok()
    logger.debug(f"process_is_ok == {status}")
    return status


def sleep(duration: float | timedelta, engine: BusEngine | None = None) -> None:
    """按总线时间休眠。总线时间可能被加速，需要与总线同步节奏时用它代替 time.sleep。"""
    (engine or get_engine()).process_sleep_ms(to_millis(duration))


def to_millis(duration: float | timedelta) -> int:
    """把秒数或 timedelta 转为整数毫秒，拒绝负值。"""
    seconds = duration.total_seconds() if isinstance(duration, timedelta) else float(duration)
    if seconds < 0:
        raise ValueError(f"duration must be non-negative, got {duration!r}")
    return int(seconds * 1000)


__all__ = [
    "Cal",
    "NODE_STATE_TO_SEVERITY",
    "NodeState",
    "SEVERITY_LEVEL_TO_NATIVE",
    "SeverityLevel",
    "healthy",
    "sleep",
    "to_millis",
]
