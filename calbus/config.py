from __future__ import annotations

from dataclasses import asdict, dataclass, fields
from typing import Any, Dict


@dataclass
class CalConfig:
    """总线引擎的运行参数。"""

    time_scale: float = 1.0  # 总线时间相对墙钟的倍率，>1 表示加速
    queue_size: int = 64  # 每个订阅者的待收消息上限，溢出时丢弃最旧的
    strict_types: bool = False  # 同一话题类型不一致时拒绝创建
    dispatch_join_timeout: float = 5.0  # 注销回调时等待分发线程退出的时间（秒）

    def __post_init__(self) -> None:
        if self.time_scale <= 0:
            raise ValueError(f"time_scale must be positive, got {self.time_scale}")
        if self.queue_size < 1:
            raise ValueError(f"queue_size must be >= 1, got {self.queue_size}")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CalConfig":
        """从字典创建配置，忽略未知字段。"""
        known = {f.name for f in fields(cls)}
        return cls(**{key: value for key, value in data.items() if key in known})


__all__ = ["CalConfig"]
