"""
Pydantic schemas - 账本与价格策略服务的输入校验与读模型
"""
from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional, Literal
from pydantic import BaseModel, ConfigDict, Field

from pms_billing.config import settings
from pms_billing.models.ontology import (
    FolioType, FolioStatus, TransactionType, TransactionCategory, RatePolicyLoop
)


# ============== 分页 Schemas ==============

class PageParams(BaseModel):
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=settings.DEFAULT_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE)
    sort_by: str = "created_at"
    sort_type: Literal["asc", "desc"] = "desc"


# ============== 账单 Schemas ==============

class FolioCreate(BaseModel):
    folio_type: FolioType = FolioType.GUEST
    bill_to_customer_id: int
    reservation_id: Optional[int] = None
    stay_record_id: Optional[int] = None
    stay_detail_id: Optional[int] = None
    notes: Optional[str] = None


class FolioUpdate(BaseModel):
    bill_to_customer_id: Optional[int] = None
    notes: Optional[str] = None


class FolioFilter(BaseModel):
    folio_type: Optional[FolioType] = None
    status: Optional[FolioStatus] = None
    bill_to_customer_id: Optional[int] = None
    stay_record_id: Optional[int] = None
    code: Optional[str] = None   # 前缀匹配


# ============== 交易 Schemas ==============

class TransactionCreate(BaseModel):
    transaction_type: TransactionType
    category: TransactionCategory
    amount: Decimal = Field(..., ge=0, decimal_places=2)
    quantity: int = Field(default=1, ge=1)
    unit_price: Optional[Decimal] = Field(None, ge=0, decimal_places=2)
    description: Optional[str] = Field(None, max_length=255)
    service_id: Optional[int] = None
    promotion_id: Optional[int] = None
    payment_method_id: Optional[int] = None
    stay_detail_id: Optional[int] = None
    posting_date: Optional[date] = None
    is_auto_posted: bool = False


class RoomChargeCreate(BaseModel):
    stay_detail_id: int
    amount: Decimal = Field(..., ge=0, decimal_places=2)
    posting_date: Optional[date] = None
    description: Optional[str] = Field(None, max_length=255)


class ServiceChargeCreate(BaseModel):
    service_id: int
    quantity: int = Field(default=1, ge=1)
    unit_price: Optional[Decimal] = Field(None, ge=0, decimal_places=2)   # 为空时取服务单价
    stay_detail_id: Optional[int] = None
    posting_date: Optional[date] = None
    description: Optional[str] = Field(None, max_length=255)


class PaymentCreate(BaseModel):
    amount: Decimal = Field(..., gt=0, decimal_places=2)
    payment_method_id: int
    description: Optional[str] = Field(None, max_length=255)


class DiscountCreate(BaseModel):
    amount: Decimal = Field(..., gt=0, decimal_places=2)
    promotion_id: Optional[int] = None
    description: Optional[str] = Field(None, max_length=255)


class ChargeCreate(BaseModel):
    """附加费 / 罚金"""
    amount: Decimal = Field(..., gt=0, decimal_places=2)
    service_id: Optional[int] = None
    stay_detail_id: Optional[int] = None
    posting_date: Optional[date] = None
    description: Optional[str] = Field(None, max_length=255)


# ============== 价格策略 Schemas ==============

class RatePolicyCreate(BaseModel):
    code: str = Field(..., max_length=20)
    name: str = Field(..., max_length=100)
    room_type_id: int
    from_date: date
    to_date: date
    loop: RatePolicyLoop = RatePolicyLoop.NONE
    price: Decimal = Field(..., gt=0, decimal_places=2)
    priority: int = Field(default=0, ge=0)


class RatePolicyUpdate(BaseModel):
    code: Optional[str] = Field(None, max_length=20)
    name: Optional[str] = Field(None, max_length=100)
    room_type_id: Optional[int] = None
    from_date: Optional[date] = None
    to_date: Optional[date] = None
    loop: Optional[RatePolicyLoop] = None
    price: Optional[Decimal] = Field(None, gt=0, decimal_places=2)
    priority: Optional[int] = Field(None, ge=0)


class RatePolicyFilter(BaseModel):
    code: Optional[str] = None
    name: Optional[str] = None
    room_type_id: Optional[int] = None
    loop: Optional[RatePolicyLoop] = None
    from_date: Optional[date] = None   # 策略区间与 [from_date, to_date] 有交集
    to_date: Optional[date] = None


# ============== 发票 Schemas ==============

class InvoiceCreate(BaseModel):
    guest_folio_id: int
    invoice_to_customer_id: int
    transaction_ids: List[int] = Field(..., min_length=1)
    tax_id: Optional[str] = Field(None, max_length=50)


class InvoiceFilter(BaseModel):
    code: Optional[str] = None   # 前缀匹配
    guest_folio_id: Optional[int] = None
    invoice_to_customer_id: Optional[int] = None
    employee_id: Optional[int] = None
    from_date: Optional[date] = None   # 开票日期区间（含两端）
    to_date: Optional[date] = None


# ============== 读模型 ==============

class TransactionResponse(BaseModel):
    id: int
    code: str
    guest_folio_id: int
    transaction_type: TransactionType
    category: TransactionCategory
    amount: Decimal
    quantity: int
    unit_price: Optional[Decimal] = None
    description: Optional[str] = None
    posting_date: date
    transaction_date: Optional[datetime] = None
    service_id: Optional[int] = None
    payment_method_id: Optional[int] = None
    promotion_id: Optional[int] = None
    stay_detail_id: Optional[int] = None
    employee_id: Optional[int] = None
    is_auto_posted: bool
    is_void: bool
    void_reason: Optional[str] = None
    void_by: Optional[int] = None
    void_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)


class FolioResponse(BaseModel):
    id: int
    code: str
    folio_type: FolioType
    status: FolioStatus
    bill_to_customer_id: int
    reservation_id: Optional[int] = None
    stay_record_id: Optional[int] = None
    stay_detail_id: Optional[int] = None
    total_charges: Decimal
    total_payments: Decimal
    balance: Decimal
    notes: Optional[str] = None
    closed_at: Optional[datetime] = None
    closed_by: Optional[int] = None
    created_at: Optional[datetime] = None
    transactions: List[TransactionResponse] = []
    model_config = ConfigDict(from_attributes=True)


class RatePolicyResponse(BaseModel):
    id: int
    code: str
    name: str
    room_type_id: int
    from_date: date
    to_date: date
    loop: RatePolicyLoop
    price: Decimal
    priority: int
    created_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)


class DailySnapshotResponse(BaseModel):
    id: int
    snapshot_date: date
    total_rooms: int
    available_rooms: int
    occupied_rooms: int
    reserved_rooms: int
    out_of_order_rooms: int
    occupancy_rate: Decimal
    room_revenue: Decimal
    service_revenue: Decimal
    surcharge_revenue: Decimal
    penalty_revenue: Decimal
    total_revenue: Decimal
    new_reservations: int
    cancelled_reservations: int
    check_ins: int
    check_outs: int
    no_shows: int
    total_guests: int
    average_daily_rate: Decimal
    rev_par: Decimal
    model_config = ConfigDict(from_attributes=True)


class InvoiceResponse(BaseModel):
    id: int
    code: str
    guest_folio_id: int
    invoice_to_customer_id: int
    tax_id: Optional[str] = None
    total_amount: Decimal
    invoice_date: Optional[datetime] = None
    employee_id: Optional[int] = None
    model_config = ConfigDict(from_attributes=True)
