"""
领域事件定义 (Domain Events)
账本与夜审的核心业务事件
"""
from enum import Enum
from dataclasses import dataclass, field, asdict
from datetime import datetime, date
from decimal import Decimal
from typing import Optional, Dict, Any, List


class EventType(str, Enum):
    """事件类型枚举"""
    # 账单相关
    FOLIO_CREATED = "folio.created"
    FOLIO_CLOSED = "folio.closed"
    TRANSACTION_POSTED = "folio.transaction_posted"
    TRANSACTION_VOIDED = "folio.transaction_voided"

    # 价格策略相关
    RATE_POLICY_CHANGED = "rate_policy.changed"
    RATE_POLICY_DELETED = "rate_policy.deleted"

    # 夜审相关
    ROOM_CHARGES_POSTED = "night_audit.room_charges_posted"
    EXTRA_PERSON_POSTED = "night_audit.extra_person_posted"
    NO_SHOWS_MARKED = "night_audit.no_shows_marked"
    SNAPSHOT_CREATED = "night_audit.snapshot_created"
    NIGHT_AUDIT_COMPLETED = "night_audit.completed"

    # 发票相关
    INVOICE_CREATED = "invoice.created"


@dataclass
class BaseEventData:
    """事件数据基类"""
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        """转换为字典（日期、金额序列化为字符串）"""
        result = asdict(self)
        for key, value in result.items():
            if isinstance(value, (datetime, date)):
                result[key] = value.isoformat()
            elif isinstance(value, Decimal):
                result[key] = str(value)
        return result


@dataclass
class FolioCreatedData(BaseEventData):
    """账单创建事件数据"""
    folio_id: int = 0
    folio_code: str = ""
    folio_type: str = ""
    bill_to_customer_id: int = 0
    stay_record_id: Optional[int] = None
    stay_detail_id: Optional[int] = None


@dataclass
class FolioClosedData(BaseEventData):
    """账单关闭事件数据"""
    folio_id: int = 0
    folio_code: str = ""
    total_charges: Decimal = Decimal("0")
    total_payments: Decimal = Decimal("0")
    operator_id: Optional[int] = None


@dataclass
class TransactionPostedData(BaseEventData):
    """交易入账事件数据"""
    folio_id: int = 0
    transaction_id: int = 0
    transaction_code: str = ""
    transaction_type: str = ""
    category: str = ""
    amount: Decimal = Decimal("0")
    balance: Decimal = Decimal("0")
    posting_date: Optional[date] = None
    operator_id: Optional[int] = None


@dataclass
class TransactionVoidedData(BaseEventData):
    """交易作废事件数据"""
    folio_id: int = 0
    transaction_id: int = 0
    transaction_code: str = ""
    amount: Decimal = Decimal("0")
    balance: Decimal = Decimal("0")
    reason: str = ""
    operator_id: Optional[int] = None


@dataclass
class RatePolicyChangedData(BaseEventData):
    """价格策略变更事件数据"""
    rate_policy_id: int = 0
    code: str = ""
    room_type_id: int = 0
    loop: str = ""
    log_rows_written: int = 0


@dataclass
class NightAuditStepData(BaseEventData):
    """夜审步骤事件数据"""
    business_date: Optional[date] = None
    total_processed: int = 0
    successful: int = 0
    skipped: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)


@dataclass
class InvoiceCreatedData(BaseEventData):
    """发票开具事件数据"""
    invoice_id: int = 0
    invoice_code: str = ""
    folio_id: int = 0
    invoice_to_customer_id: int = 0
    total_amount: Decimal = Decimal("0")
    transaction_ids: List[int] = field(default_factory=list)
    operator_id: Optional[int] = None
