"""
价格日志缓存 - 按 (房型, 日期) 物化的价格表

- NONE 策略：区间内每天写入一行
- 循环策略：只在 from_date 写入一行锚点，具体日期的匹配在读取时由解析器完成
- 同一 (房型, 日期) 只保留一行，后写入者覆盖
"""
import logging
from datetime import date, timedelta
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from pms_billing.models.ontology import RatePolicy, RatePolicyLog, RatePolicyLoop
from pms_billing.services.rate_resolver import DateLike, to_business_date

logger = logging.getLogger(__name__)


def policy_log_dates(policy: RatePolicy) -> List[date]:
    """策略需要物化的日期"""
    start = to_business_date(policy.from_date)
    end = to_business_date(policy.to_date)

    if policy.loop != RatePolicyLoop.NONE:
        return [start]

    dates = []
    current = start
    while current <= end:
        dates.append(current)
        current += timedelta(days=1)
    return dates


class RatePolicyLogCache:
    """价格日志缓存"""

    def __init__(self, db: Session):
        self.db = db

    def rebuild(self, policy: RatePolicy) -> int:
        """
        按策略重写日志行（upsert），不提交事务，由调用方的工作单元统一提交

        Returns:
            写入的行数
        """
        dates = policy_log_dates(policy)
        if not dates:
            return 0

        existing: Dict[date, RatePolicyLog] = {
            log.date: log for log in self.db.query(RatePolicyLog).filter(
                RatePolicyLog.room_type_id == policy.room_type_id,
                RatePolicyLog.date >= dates[0],
                RatePolicyLog.date <= dates[-1]
            ).all()
        }

        for day in dates:
            log = existing.get(day)
            if log is None:
                self.db.add(RatePolicyLog(
                    room_type_id=policy.room_type_id,
                    date=day,
                    price=policy.price,
                    rate_policy_id=policy.id
                ))
            else:
                log.price = policy.price
                log.rate_policy_id = policy.id

        self.db.flush()
        logger.info(
            f"Rebuilt {len(dates)} rate log rows for policy {policy.code} "
            f"(room type {policy.room_type_id}, loop {policy.loop.value})"
        )
        return len(dates)

    def find_for_date(self, room_type_id: int, target: DateLike) -> Optional[RatePolicyLog]:
        """精确日期的日志行"""
        return self.db.query(RatePolicyLog).filter(
            RatePolicyLog.room_type_id == room_type_id,
            RatePolicyLog.date == to_business_date(target)
        ).first()

    def find_nearest_past(self, room_type_id: int, reference: DateLike) -> Optional[RatePolicyLog]:
        """日期不晚于参考日期的最近一行"""
        return self.db.query(RatePolicyLog).filter(
            RatePolicyLog.room_type_id == room_type_id,
            RatePolicyLog.date <= to_business_date(reference)
        ).order_by(RatePolicyLog.date.desc()).first()

    def get_logs_for_policy(self, rate_policy_id: int, limit: int = 100) -> List[RatePolicyLog]:
        return self.db.query(RatePolicyLog).filter(
            RatePolicyLog.rate_policy_id == rate_policy_id
        ).order_by(RatePolicyLog.date.asc()).limit(limit).all()
