"""
事件总线 - 内存级发布/订阅模式
账本与夜审服务在提交成功后发布事件，订阅方（通知、审计、报表刷新）与账本解耦
"""
from typing import Callable, Dict, List, Any, Optional, Union
from dataclasses import dataclass, field
from datetime import datetime
from collections import deque
import logging
import threading
import uuid

from pms_billing.models.events import EventType

logger = logging.getLogger(__name__)

# 订阅全部事件类型
WILDCARD = "*"


def _event_key(event_type: Union[str, EventType]) -> str:
    return event_type.value if isinstance(event_type, EventType) else str(event_type)


@dataclass
class Event:
    """事件基类"""
    event_type: str
    timestamp: datetime
    data: Dict[str, Any]
    source: str  # 触发来源（服务名）
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def __post_init__(self):
        self.event_type = _event_key(self.event_type)


class EventBus:
    """
    内存级事件总线（线程安全单例模式）

    使用方式：
    1. 订阅事件：event_bus.subscribe(EventType.FOLIO_CLOSED, handler_func)
    2. 订阅全部：event_bus.subscribe("*", audit_handler)
    3. 发布事件：event_bus.publish(Event(...))
    """

    _instance = None
    _lock = threading.Lock()

    def __new__(cls):
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self):
        if self._initialized:
            return
        self._subscribers: Dict[str, List[Callable]] = {}
        self._event_history: deque = deque(maxlen=200)
        self._subscriber_lock = threading.Lock()
        self._initialized = True
        logger.info("EventBus initialized")

    def subscribe(self, event_type: Union[str, EventType], handler: Callable) -> None:
        """
        订阅事件

        Args:
            event_type: 事件类型，"*" 表示全部
            handler: 处理函数，接收 Event 对象作为参数
        """
        key = _event_key(event_type)
        with self._subscriber_lock:
            handlers = self._subscribers.setdefault(key, [])
            if handler not in handlers:
                handlers.append(handler)
                logger.info(f"Handler {handler.__name__} subscribed to {key}")

    def unsubscribe(self, event_type: Union[str, EventType], handler: Callable) -> None:
        """取消订阅"""
        key = _event_key(event_type)
        with self._subscriber_lock:
            if handler in self._subscribers.get(key, []):
                self._subscribers[key].remove(handler)
                logger.info(f"Handler {handler.__name__} unsubscribed from {key}")

    def publish(self, event: Event) -> int:
        """
        发布事件（同步执行所有处理器）

        处理器异常只记录日志，不影响其他处理器，也不回传给发布方：
        事件在账本提交之后发布，此时写入已经生效

        Returns:
            成功执行的处理器数量
        """
        self._event_history.append(event)

        with self._subscriber_lock:
            handlers = (
                self._subscribers.get(event.event_type, [])
                + self._subscribers.get(WILDCARD, [])
            )

        if handlers:
            logger.debug(f"Publishing {event.event_type} to {len(handlers)} handlers")

        delivered = 0
        for handler in handlers:
            try:
                handler(event)
                delivered += 1
            except Exception as e:
                logger.error(
                    f"Event handler {handler.__name__} error for {event.event_type}: {e}",
                    exc_info=True
                )
        return delivered

    def get_history(self, event_type: Optional[Union[str, EventType]] = None,
                    limit: int = 50) -> List[Event]:
        """
        获取事件历史（最新的在前）
        """
        history = list(self._event_history)
        if event_type:
            key = _event_key(event_type)
            history = [e for e in history if e.event_type == key]
        return list(reversed(history))[:limit]

    def clear_subscribers(self) -> None:
        """清空所有订阅（用于测试）"""
        with self._subscriber_lock:
            self._subscribers.clear()

    def clear_history(self) -> None:
        """清空事件历史"""
        self._event_history.clear()


# 全局事件总线实例
event_bus = EventBus()


def publish_event(event_type: EventType, data: Dict[str, Any], source: str,
                  publisher: Optional[Callable[[Event], Any]] = None) -> None:
    """构造并发布事件；publisher 为空时使用全局总线"""
    (publisher or event_bus.publish)(Event(
        event_type=event_type,
        timestamp=datetime.now(),
        data=data,
        source=source
    ))
