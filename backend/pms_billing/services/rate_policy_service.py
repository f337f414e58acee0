"""
价格策略服务 - 本体操作层
管理 RatePolicy 对象，策略创建/变更时同步重建价格日志
"""
import logging
from datetime import date, timedelta
from decimal import Decimal
from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from pms_billing.config import settings
from pms_billing.database import unit_of_work
from pms_billing.exceptions import BadRequestError, NotFoundError
from pms_billing.models.events import EventType, RatePolicyChangedData
from pms_billing.models.ontology import RatePolicy, RoomType
from pms_billing.models.schemas import (
    PageParams, RatePolicyCreate, RatePolicyFilter, RatePolicyUpdate
)
from pms_billing.services.event_bus import Event, publish_event
from pms_billing.services.pagination import paginate
from pms_billing.services.rate_policy_log import RatePolicyLogCache
from pms_billing.services.rate_resolver import DateLike, RateResolver, to_business_date

logger = logging.getLogger(__name__)

# 变更后需要重建价格日志的字段
LOG_AFFECTING_FIELDS = ("from_date", "to_date", "price", "loop", "room_type_id")

SORTABLE_FIELDS = ("created_at", "updated_at", "code", "name", "priority", "from_date", "price")


class RatePolicyService:
    """价格策略服务"""

    def __init__(self, db: Session, event_publisher: Callable[[Event], None] = None):
        self.db = db
        self._publish_event = event_publisher
        self.logs = RatePolicyLogCache(db)
        self.resolver = RateResolver(db)

    def _get_room_type(self, room_type_id: int) -> RoomType:
        room_type = self.db.query(RoomType).filter(RoomType.id == room_type_id).first()
        if not room_type:
            raise BadRequestError("房型不存在")
        return room_type

    def _ensure_code_available(self, code: str) -> None:
        if self.db.query(RatePolicy).filter(RatePolicy.code == code).first():
            raise BadRequestError(f"价格策略编码已存在: {code}")

    @staticmethod
    def _validate_dates(from_date: date, to_date: date) -> None:
        if to_date < from_date:
            raise BadRequestError("结束日期不能早于开始日期")

    @staticmethod
    def _event_data(policy: RatePolicy, rows: int = 0) -> RatePolicyChangedData:
        return RatePolicyChangedData(
            rate_policy_id=policy.id,
            code=policy.code,
            room_type_id=policy.room_type_id,
            loop=policy.loop.value,
            log_rows_written=rows
        )

    def _publish_changed(self, event_type: EventType, data: RatePolicyChangedData) -> None:
        publish_event(
            event_type,
            data.to_dict(),
            source="rate_policy_service",
            publisher=self._publish_event
        )

    # ============== 查询 ==============

    def get_rate_policy(self, rate_policy_id: int) -> Optional[RatePolicy]:
        """获取单个价格策略"""
        return self.db.query(RatePolicy).filter(RatePolicy.id == rate_policy_id).first()

    def get_rate_policy_by_id(self, rate_policy_id: int) -> dict:
        """获取价格策略详情（含部分价格日志）"""
        policy = self.get_rate_policy(rate_policy_id)
        if not policy:
            raise NotFoundError("价格策略不存在")
        return {
            'policy': policy,
            'room_type': policy.room_type,
            'logs': self.logs.get_logs_for_policy(
                policy.id, limit=settings.RATE_POLICY_LOG_PREVIEW_LIMIT
            ),
        }

    def query_rate_policies(self, filters: Optional[RatePolicyFilter] = None,
                            page: Optional[PageParams] = None) -> dict:
        """分页查询价格策略"""
        filters = filters or RatePolicyFilter()
        query = self.db.query(RatePolicy)

        if filters.code:
            query = query.filter(RatePolicy.code.startswith(filters.code))
        if filters.name:
            query = query.filter(RatePolicy.name.contains(filters.name))
        if filters.room_type_id:
            query = query.filter(RatePolicy.room_type_id == filters.room_type_id)
        if filters.loop:
            query = query.filter(RatePolicy.loop == filters.loop)
        if filters.from_date:
            query = query.filter(RatePolicy.to_date >= filters.from_date)
        if filters.to_date:
            query = query.filter(RatePolicy.from_date <= filters.to_date)

        return paginate(query, RatePolicy, page, SORTABLE_FIELDS)

    # ============== 变更 ==============

    def create_rate_policy(self, data: RatePolicyCreate) -> RatePolicy:
        """创建价格策略并物化价格日志"""
        with unit_of_work(self.db):
            self._ensure_code_available(data.code)
            self._get_room_type(data.room_type_id)
            self._validate_dates(data.from_date, data.to_date)

            policy = RatePolicy(**data.model_dump())
            self.db.add(policy)
            self.db.flush()
            rows = self.logs.rebuild(policy)

        self.db.refresh(policy)
        logger.info(f"Rate policy {policy.code} created for room type {policy.room_type_id}")
        self._publish_changed(EventType.RATE_POLICY_CHANGED, self._event_data(policy, rows))
        return policy

    def update_rate_policy_by_id(self, rate_policy_id: int, data: RatePolicyUpdate) -> RatePolicy:
        """更新价格策略；日期、价格、循环方式或房型变化时重建价格日志"""
        rows = 0
        with unit_of_work(self.db):
            policy = self.get_rate_policy(rate_policy_id)
            if not policy:
                raise NotFoundError("价格策略不存在")

            update_data = data.model_dump(exclude_unset=True, exclude_none=True)

            if 'code' in update_data and update_data['code'] != policy.code:
                self._ensure_code_available(update_data['code'])
            if 'room_type_id' in update_data:
                self._get_room_type(update_data['room_type_id'])

            changed = {
                key for key, value in update_data.items()
                if getattr(policy, key) != value
            }
            for key, value in update_data.items():
                setattr(policy, key, value)

            self._validate_dates(policy.from_date, policy.to_date)
            self.db.flush()

            if changed.intersection(LOG_AFFECTING_FIELDS):
                rows = self.logs.rebuild(policy)

        self.db.refresh(policy)
        self._publish_changed(EventType.RATE_POLICY_CHANGED, self._event_data(policy, rows))
        return policy

    def delete_rate_policy_by_id(self, rate_policy_id: int) -> RatePolicy:
        """
        删除价格策略
        价格日志保留作为历史价格，其策略引用不再指向有效记录
        """
        with unit_of_work(self.db):
            policy = self.get_rate_policy(rate_policy_id)
            if not policy:
                raise NotFoundError("价格策略不存在")
            event_data = self._event_data(policy)
            self.db.delete(policy)

        logger.info(f"Rate policy {event_data.code} deleted; rate logs retained")
        self._publish_changed(EventType.RATE_POLICY_DELETED, event_data)
        return policy

    # ============== 报价 ==============

    def get_nightly_price(self, room_type: RoomType, night: DateLike) -> dict:
        """单晚价格：价格日志 → 策略解析 → 门市价"""
        log = self.logs.find_for_date(room_type.id, night)
        if log is not None:
            return {'date': to_business_date(night), 'price': log.price, 'source': 'log'}

        price = self.resolver.resolve_price(room_type.id, night)
        if price is not None:
            return {'date': to_business_date(night), 'price': price, 'source': 'policy'}

        return {'date': to_business_date(night), 'price': room_type.rack_rate, 'source': 'rack_rate'}

    def calculate_rate(self, room_type_id: int, check_in: DateLike, check_out: DateLike,
                       number_of_guests: int = 1) -> dict:
        """
        计算入住区间报价（离店当天不计房费）

        Returns:
            每晚价格、房费合计、加人费与总价
        """
        room_type = self._get_room_type(room_type_id)
        start = to_business_date(check_in)
        end = to_business_date(check_out)
        if end <= start:
            raise BadRequestError("离店日期必须晚于入住日期")
        if number_of_guests < 1:
            raise BadRequestError("入住人数至少为 1")

        nights: List[dict] = []
        current = start
        while current < end:
            nights.append(self.get_nightly_price(room_type, current))
            current += timedelta(days=1)

        room_total = sum((n['price'] for n in nights), Decimal("0"))
        extra_guests = max(0, number_of_guests - (room_type.base_capacity or 0))
        extra_person_total = (
            Decimal(extra_guests) * (room_type.extra_person_fee or Decimal("0")) * len(nights)
        )

        return {
            'room_type_id': room_type.id,
            'check_in': start,
            'check_out': end,
            'nights': len(nights),
            'number_of_guests': number_of_guests,
            'price_per_night': nights,
            'room_total': room_total,
            'extra_guests': extra_guests,
            'extra_person_fee': extra_person_total,
            'total_price': room_total + extra_person_total,
        }
