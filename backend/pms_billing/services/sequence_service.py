"""
编码序列服务
生成 <PREFIX><YYMMDD><NNNN> 格式的账单、交易、预订编码

每个日期前缀在 code_sequences 表中占一行，通过单条 UPDATE 原子自增，
与调用方处于同一事务：调用方回滚时序号一并回滚，不产生空号
"""
import logging
from datetime import date, datetime
from typing import Callable, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from pms_billing.config import settings
from pms_billing.models.ontology import CodeSequence

logger = logging.getLogger(__name__)


def format_code(prefix: str, business_date: date, value: int, width: int) -> str:
    """FLO + 261018 + 0001"""
    return f"{prefix}{business_date.strftime('%y%m%d')}{value:0{width}d}"


class SequenceService:
    """编码序列服务"""

    def __init__(self, db: Session, clock: Optional[Callable[[], datetime]] = None):
        self.db = db
        self._clock = clock or datetime.now

    def next_value(self, prefix: str) -> int:
        """指定前缀的下一个序号（从 1 开始）"""
        if self._increment(prefix) == 0:
            try:
                with self.db.begin_nested():
                    self.db.add(CodeSequence(prefix=prefix, last_value=1, updated_at=self._clock()))
                return 1
            except IntegrityError:
                # 并发请求先插入了该前缀，改为自增
                logger.info(f"Sequence {prefix} created concurrently, retrying increment")
                self._increment(prefix)

        return self.db.query(CodeSequence.last_value).filter(
            CodeSequence.prefix == prefix
        ).scalar()

    def _increment(self, prefix: str) -> int:
        result = self.db.execute(
            update(CodeSequence)
            .where(CodeSequence.prefix == prefix)
            .values(last_value=CodeSequence.last_value + 1, updated_at=self._clock())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    def next_code(self, prefix: str, width: int) -> str:
        today = self._clock().date()
        date_prefix = f"{prefix}{today.strftime('%y%m%d')}"
        value = self.next_value(date_prefix)
        if value >= 10 ** width:
            logger.warning(f"Sequence {date_prefix} exceeded {width} digits: {value}")
        return format_code(prefix, today, value, width)

    def next_folio_code(self) -> str:
        return self.next_code(settings.FOLIO_CODE_PREFIX, settings.FOLIO_CODE_WIDTH)

    def next_transaction_code(self) -> str:
        return self.next_code(settings.TRANSACTION_CODE_PREFIX, settings.TRANSACTION_CODE_WIDTH)

    def next_reservation_code(self) -> str:
        return self.next_code(settings.RESERVATION_CODE_PREFIX, settings.RESERVATION_CODE_WIDTH)

    def next_invoice_code(self) -> str:
        return self.next_code(settings.INVOICE_CODE_PREFIX, settings.INVOICE_CODE_WIDTH)
