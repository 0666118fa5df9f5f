from __future__ import annotations


class CalError(RuntimeError):
    """calbus 所有运行期错误的基类。"""


class InitializationFailed(CalError):
    def __init__(self, unit_name: str | None = None):
        detail = f" ({unit_name})" if unit_name else ""
        super().__init__(f"总线初始化失败{detail}")
        self.unit_name = unit_name


class PublisherCreationFailed(CalError):
    def __init__(self, topic_name: str):
        super().__init__(f"Unable to create new publisher for `{topic_name}`")
        self.topic_name = topic_name


class SubscriberCreationFailed(CalError):
    def __init__(self, topic_name: str):
        super().__init__(f"Unable to create new subscriber for `{topic_name}`")
        self.topic_name = topic_name


class PublishFailed(CalError):
    """消息未发送，或只发送了一部分。"""

    def __init__(self, expected: int, sent: int):
        super().__init__(f"消息发送不完整: {sent} / {expected} bytes")
        self.expected = expected
        self.sent = sent


class InvalidFormat(CalError):
    """收到的消息无法按绑定的格式解码。"""

    def __init__(self, topic_name: str, original: BaseException):
        super().__init__(f"话题 {topic_name} 收到无法解码的消息: {original}")
        self.topic_name = topic_name
        self.original = original


class Timeout(CalError):
    def __init__(self, topic_name: str, timeout_ms: int):
        super().__init__(f"Time-out waiting to receive message on `{topic_name}` ({timeout_ms} ms)")
        self.topic_name = topic_name
        self.timeout_ms = timeout_ms


class FormatError(ValueError):
    """格式层的编解码错误，由具体 Format 抛出，调用方映射为 InvalidFormat。"""


__all__ = [
    "CalError",
    "FormatError",
    "InitializationFailed",
    "InvalidFormat",
    "PublishFailed",
    "PublisherCreationFailed",
    "SubscriberCreationFailed",
    "Timeout",
]
