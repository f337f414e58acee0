"""
价格策略解析 - 给定房型和日期，返回生效的策略价格

匹配规则（按天比较，忽略时间部分）：
- NONE:    from_date <= 日期 <= to_date
- WEEKLY:  比较星期几；起点晚于终点时跨周环绕（周五→周一 = 五、六、日、一）
- MONTHLY: 比较月内日期 1-31，同样支持环绕
- YEARLY:  比较 (月, 日)，支持跨年（12 月 → 1 月）

同优先级多条策略同时命中时，后创建的策略优先（再按 id 倒序）
"""
import logging
from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional, Union

from sqlalchemy.orm import Session

from pms_billing.models.ontology import RatePolicy, RatePolicyLoop

logger = logging.getLogger(__name__)

DateLike = Union[date, datetime]


def to_business_date(value: DateLike) -> date:
    """去掉时间部分"""
    if isinstance(value, datetime):
        return value.date()
    return value


def in_cyclic_range(value, start, end) -> bool:
    """闭区间匹配；start > end 时视为环绕区间"""
    if start <= end:
        return start <= value <= end
    return value >= start or value <= end


def policy_matches_date(loop: RatePolicyLoop, from_date: DateLike, to_date: DateLike,
                        target: DateLike) -> bool:
    """判断策略在目标日期是否生效"""
    start = to_business_date(from_date)
    end = to_business_date(to_date)
    day = to_business_date(target)

    if loop == RatePolicyLoop.NONE:
        return start <= day <= end
    if loop == RatePolicyLoop.WEEKLY:
        return in_cyclic_range(day.weekday(), start.weekday(), end.weekday())
    if loop == RatePolicyLoop.MONTHLY:
        return in_cyclic_range(day.day, start.day, end.day)
    if loop == RatePolicyLoop.YEARLY:
        return in_cyclic_range((day.month, day.day), (start.month, start.day), (end.month, end.day))
    raise ValueError(f"Unsupported rate policy loop: {loop}")


class RateResolver:
    """价格策略解析器"""

    def __init__(self, db: Session):
        self.db = db

    def get_policies(self, room_type_id: int) -> List[RatePolicy]:
        """房型全部策略，按优先级、创建时间、id 倒序"""
        return self.db.query(RatePolicy).filter(
            RatePolicy.room_type_id == room_type_id
        ).order_by(
            RatePolicy.priority.desc(),
            RatePolicy.created_at.desc(),
            RatePolicy.id.desc()
        ).all()

    def find_applicable_policy(self, room_type_id: int, target: DateLike) -> Optional[RatePolicy]:
        """返回目标日期生效的最高优先级策略"""
        day = to_business_date(target)
        for policy in self.get_policies(room_type_id):
            if policy_matches_date(policy.loop, policy.from_date, policy.to_date, day):
                return policy
        return None

    def resolve_price(self, room_type_id: int, target: DateLike) -> Optional[Decimal]:
        """
        解析目标日期的策略价格

        Returns:
            命中策略的价格；无策略命中时返回 None，由调用方回退到门市价
        """
        policy = self.find_applicable_policy(room_type_id, target)
        if policy is None:
            return None
        logger.debug(
            f"Room type {room_type_id} on {to_business_date(target)} resolved by policy {policy.code}"
        )
        return policy.price
