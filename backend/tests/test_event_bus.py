"""
事件总线单元测试
"""
import pytest
from datetime import date, datetime
from decimal import Decimal

from pms_billing.models.events import EventType, TransactionPostedData
from pms_billing.services.event_bus import EventBus, Event, publish_event


class TestEventBus:
    """事件总线测试"""

    @pytest.fixture
    def event_bus(self):
        """获取事件总线并清空状态"""
        bus = EventBus()
        bus.clear_subscribers()
        bus.clear_history()
        yield bus
        bus.clear_subscribers()
        bus.clear_history()

    @pytest.fixture
    def sample_event(self):
        return Event(
            event_type=EventType.FOLIO_CLOSED,
            timestamp=datetime.now(),
            data={"folio_id": 1},
            source="test"
        )

    def test_event_type_normalized(self, sample_event):
        assert sample_event.event_type == "folio.closed"
        assert sample_event.event_id

    def test_subscribe_and_publish(self, event_bus, sample_event):
        """测试订阅和发布"""
        received = []
        event_bus.subscribe(EventType.FOLIO_CLOSED, received.append)

        delivered = event_bus.publish(sample_event)

        assert delivered == 1
        assert received[0].data["folio_id"] == 1

    def test_wildcard_receives_everything(self, event_bus, sample_event):
        received = []

        def audit(event):
            received.append(event.event_type)

        event_bus.subscribe("*", audit)
        event_bus.publish(sample_event)
        event_bus.publish(Event(
            event_type=EventType.TRANSACTION_POSTED, timestamp=datetime.now(), data={}, source="test"
        ))

        assert received == ["folio.closed", "folio.transaction_posted"]

    def test_unsubscribe(self, event_bus, sample_event):
        """测试取消订阅"""
        received = []

        def handler(event):
            received.append(event)

        event_bus.subscribe(EventType.FOLIO_CLOSED, handler)
        event_bus.unsubscribe(EventType.FOLIO_CLOSED, handler)
        event_bus.publish(sample_event)

        assert received == []

    def test_handler_exception_isolation(self, event_bus, sample_event):
        """处理器异常不影响其他处理器，也不抛给发布方"""
        successful_calls = []

        def failing_handler(event):
            raise ValueError("Test error")

        def successful_handler(event):
            successful_calls.append(event)

        event_bus.subscribe(EventType.FOLIO_CLOSED, failing_handler)
        event_bus.subscribe(EventType.FOLIO_CLOSED, successful_handler)

        assert event_bus.publish(sample_event) == 1
        assert len(successful_calls) == 1

    def test_duplicate_subscription(self, event_bus, sample_event):
        """重复订阅只调用一次"""
        call_count = [0]

        def handler(event):
            call_count[0] += 1

        event_bus.subscribe(EventType.FOLIO_CLOSED, handler)
        event_bus.subscribe(EventType.FOLIO_CLOSED, handler)
        event_bus.publish(sample_event)

        assert call_count[0] == 1

    def test_event_history(self, event_bus):
        for i in range(5):
            event_bus.publish(Event(
                event_type=EventType.TRANSACTION_POSTED,
                timestamp=datetime.now(),
                data={"index": i},
                source="test"
            ))

        history = event_bus.get_history()
        assert len(history) == 5
        # 最新的在前
        assert history[0].data["index"] == 4

    def test_event_history_filter(self, event_bus, sample_event):
        event_bus.publish(sample_event)
        event_bus.publish(Event(
            event_type=EventType.TRANSACTION_VOIDED, timestamp=datetime.now(), data={}, source="test"
        ))

        history = event_bus.get_history(event_type=EventType.TRANSACTION_VOIDED)
        assert len(history) == 1
        assert history[0].event_type == "folio.transaction_voided"

    def test_singleton_pattern(self):
        assert EventBus() is EventBus()

    def test_publish_event_uses_custom_publisher(self, event_bus):
        captured = []
        publish_event(EventType.FOLIO_CREATED, {"folio_id": 7}, source="test", publisher=captured.append)

        assert captured[0].event_type == "folio.created"
        assert captured[0].source == "test"
        assert event_bus.get_history() == []

    def test_publish_event_defaults_to_global_bus(self, event_bus):
        received = []
        event_bus.subscribe(EventType.FOLIO_CREATED, received.append)

        publish_event(EventType.FOLIO_CREATED, {"folio_id": 7}, source="test")

        assert len(received) == 1


class TestEventData:

    def test_to_dict_serializes_dates_and_money(self):
        data = TransactionPostedData(
            folio_id=1,
            transaction_id=2,
            amount=Decimal("500000.00"),
            balance=Decimal("0.00"),
            posting_date=date(2026, 3, 14)
        ).to_dict()

        assert data["amount"] == "500000.00"
        assert data["posting_date"] == "2026-03-14"
        assert isinstance(data["timestamp"], str)
