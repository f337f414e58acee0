"""
本体对象定义 (Ontology Objects)
账本核心对象：GuestFolio、FolioTransaction、RatePolicy、RatePolicyLog、
DailySnapshot、Invoice、CodeSequence；其余对象（房型、房间、住宿、预订等）由外部模块维护，
此处仅作为只读依赖建模
"""
from datetime import datetime
from enum import Enum
from sqlalchemy import (
    Column, Integer, String, DateTime, Date, ForeignKey, Text,
    Enum as SQLEnum, Boolean, Numeric, Index, UniqueConstraint, text
)
from sqlalchemy.orm import relationship
from pms_billing.database import Base


# ============== 枚举定义 ==============

class RoomStatus(str, Enum):
    """房间状态枚举"""
    AVAILABLE = "available"        # 可售
    RESERVED = "reserved"          # 已预留
    OCCUPIED = "occupied"          # 入住中
    CLEANING = "cleaning"          # 清洁中
    MAINTENANCE = "maintenance"    # 保养中
    OUT_OF_ORDER = "out_of_order"  # 维修停用


class ReservationStatus(str, Enum):
    """预订状态枚举"""
    PENDING = "pending"          # 待确认
    CONFIRMED = "confirmed"      # 已确认
    CHECKED_IN = "checked_in"    # 已入住
    CHECKED_OUT = "checked_out"  # 已离店
    CANCELLED = "cancelled"      # 已取消
    NO_SHOW = "no_show"          # 未到店


class StayDetailStatus(str, Enum):
    """住宿明细（房间维度）状态"""
    OCCUPIED = "occupied"        # 在住
    CHECKED_OUT = "checked_out"  # 已退房


class ServiceGroup(str, Enum):
    """服务分组"""
    GENERAL = "general"          # 普通消费
    SURCHARGE = "surcharge"      # 附加费


class FolioType(str, Enum):
    """账单类型"""
    GUEST = "guest"                  # 房间账单（绑定住宿明细）
    MASTER = "master"                # 主账单（绑定住宿记录）
    NON_RESIDENT = "non_resident"    # 非住店客人账单


class FolioStatus(str, Enum):
    """账单状态"""
    OPEN = "open"
    CLOSED = "closed"


class TransactionType(str, Enum):
    """交易方向"""
    DEBIT = "debit"      # 借方：增加应收
    CREDIT = "credit"    # 贷方：减少应收


class TransactionCategory(str, Enum):
    """交易类别"""
    ROOM_CHARGE = "room_charge"
    SERVICE_CHARGE = "service_charge"
    SURCHARGE = "surcharge"
    PENALTY = "penalty"
    DEPOSIT = "deposit"
    PAYMENT = "payment"
    REFUND = "refund"
    DISCOUNT = "discount"

    @property
    def direction(self) -> "TransactionType":
        """类别对应的记账方向"""
        return CATEGORY_DIRECTIONS[self]

    @property
    def breakdown_key(self) -> str:
        """账单汇总中的分组键"""
        return CATEGORY_BREAKDOWN_KEYS[self]

    @property
    def label(self) -> str:
        """显示名称"""
        return CATEGORY_LABELS[self]


class RatePolicyLoop(str, Enum):
    """价格策略循环方式"""
    NONE = "none"          # 不循环：日期区间
    WEEKLY = "weekly"      # 按星期循环
    MONTHLY = "monthly"    # 按月内日期循环
    YEARLY = "yearly"      # 按年内月日循环


CATEGORY_DIRECTIONS = {
    TransactionCategory.ROOM_CHARGE: TransactionType.DEBIT,
    TransactionCategory.SERVICE_CHARGE: TransactionType.DEBIT,
    TransactionCategory.SURCHARGE: TransactionType.DEBIT,
    TransactionCategory.PENALTY: TransactionType.DEBIT,
    TransactionCategory.DEPOSIT: TransactionType.CREDIT,
    TransactionCategory.PAYMENT: TransactionType.CREDIT,
    TransactionCategory.REFUND: TransactionType.DEBIT,
    TransactionCategory.DISCOUNT: TransactionType.CREDIT,
}

CATEGORY_BREAKDOWN_KEYS = {
    TransactionCategory.ROOM_CHARGE: "room_charges",
    TransactionCategory.SERVICE_CHARGE: "service_charges",
    TransactionCategory.SURCHARGE: "surcharges",
    TransactionCategory.PENALTY: "penalties",
    TransactionCategory.DEPOSIT: "deposits",
    TransactionCategory.PAYMENT: "payments",
    TransactionCategory.REFUND: "refunds",
    TransactionCategory.DISCOUNT: "discounts",
}

CATEGORY_LABELS = {
    TransactionCategory.ROOM_CHARGE: "Room Charge",
    TransactionCategory.SERVICE_CHARGE: "Service Charge",
    TransactionCategory.SURCHARGE: "Surcharge",
    TransactionCategory.PENALTY: "Penalty",
    TransactionCategory.DEPOSIT: "Deposit",
    TransactionCategory.PAYMENT: "Payment",
    TransactionCategory.REFUND: "Refund",
    TransactionCategory.DISCOUNT: "Discount",
}


def _ensure_exhaustive(mapping: dict, name: str) -> None:
    missing = set(TransactionCategory) - set(mapping)
    if missing:
        raise RuntimeError(
            f"{name} missing categories: {sorted(c.name for c in missing)}"
        )


# 新增类别时，以上映射缺项会在导入时直接失败
for _mapping, _name in (
    (CATEGORY_DIRECTIONS, "CATEGORY_DIRECTIONS"),
    (CATEGORY_BREAKDOWN_KEYS, "CATEGORY_BREAKDOWN_KEYS"),
    (CATEGORY_LABELS, "CATEGORY_LABELS"),
):
    _ensure_exhaustive(_mapping, _name)


# ============== 外部对象（只读依赖） ==============

class RoomType(Base):
    """
    房型对象
    rack_rate 为无策略命中时的门市价
    """
    __tablename__ = "room_types"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(20), unique=True)
    name = Column(String(50), unique=True, nullable=False)   # 房型名称
    rack_rate = Column(Numeric(15, 2), nullable=False)      # 门市价
    extra_person_fee = Column(Numeric(15, 2), default=0)    # 加人费（每人每晚）
    base_capacity = Column(Integer, default=2)              # 标准入住人数
    max_capacity = Column(Integer, default=3)               # 最大入住人数
    created_at = Column(DateTime, default=datetime.now)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)

    rooms = relationship("Room", back_populates="room_type")
    rate_policies = relationship("RatePolicy", back_populates="room_type")


class Room(Base):
    """房间对象"""
    __tablename__ = "rooms"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(10), unique=True, nullable=False)  # 房间号
    room_type_id = Column(Integer, ForeignKey("room_types.id"), nullable=False)
    status = Column(SQLEnum(RoomStatus), default=RoomStatus.AVAILABLE)
    created_at = Column(DateTime, default=datetime.now)

    room_type = relationship("RoomType", back_populates="rooms")
    stay_details = relationship("StayDetail", back_populates="room")


class Customer(Base):
    """客户对象（账单付款方）"""
    __tablename__ = "customers"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(20), unique=True)
    full_name = Column(String(100), nullable=False)
    phone = Column(String(20))
    email = Column(String(100))
    created_at = Column(DateTime, default=datetime.now)


class Employee(Base):
    """员工对象（操作人）"""
    __tablename__ = "employees"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(20), unique=True)
    name = Column(String(100), nullable=False)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.now)


class Service(Base):
    """酒店服务项目"""
    __tablename__ = "services"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(30), unique=True, nullable=False)
    name = Column(String(100), nullable=False)
    unit_price = Column(Numeric(15, 2), nullable=False)
    service_group = Column(SQLEnum(ServiceGroup), default=ServiceGroup.GENERAL)
    is_active = Column(Boolean, default=True)


class PaymentMethod(Base):
    """支付方式"""
    __tablename__ = "payment_methods"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(20), unique=True, nullable=False)
    name = Column(String(50), nullable=False)


class Promotion(Base):
    """促销活动"""
    __tablename__ = "promotions"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(20), unique=True, nullable=False)
    name = Column(String(200), nullable=False)


class Reservation(Base):
    """
    预订对象
    reservation_date 为下单时间，夜审按其锁定房价
    """
    __tablename__ = "reservations"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(20), unique=True)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=False)
    reservation_date = Column(DateTime, default=datetime.now)  # 下单时间
    expected_arrival = Column(DateTime, nullable=False)        # 预计到店
    expected_departure = Column(DateTime, nullable=False)      # 预计离店
    number_of_guests = Column(Integer, default=1)
    status = Column(SQLEnum(ReservationStatus), default=ReservationStatus.PENDING)
    created_at = Column(DateTime, default=datetime.now)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)

    customer = relationship("Customer")
    stay_records = relationship("StayRecord", back_populates="reservation")


class StayRecord(Base):
    """
    住宿记录对象 - 一次入住的聚合根
    下挂多个 StayDetail（每间房一条）
    """
    __tablename__ = "stay_records"

    id = Column(Integer, primary_key=True, index=True)
    reservation_id = Column(Integer, ForeignKey("reservations.id"), nullable=True)  # 可能是 walk-in
    customer_id = Column(Integer, ForeignKey("customers.id"))
    check_in_time = Column(DateTime, nullable=False)     # 实际入住时间
    created_at = Column(DateTime, default=datetime.now)

    reservation = relationship("Reservation", back_populates="stay_records")
    customer = relationship("Customer")
    stay_details = relationship("StayDetail", back_populates="stay_record")
    guest_folios = relationship("GuestFolio", back_populates="stay_record")


class StayDetail(Base):
    """住宿明细 - 单间房的入住信息"""
    __tablename__ = "stay_details"

    id = Column(Integer, primary_key=True, index=True)
    stay_record_id = Column(Integer, ForeignKey("stay_records.id"), nullable=False)
    room_id = Column(Integer, ForeignKey("rooms.id"), nullable=False)
    status = Column(SQLEnum(StayDetailStatus), default=StayDetailStatus.OCCUPIED)
    expected_check_out = Column(DateTime, nullable=False)  # 预计退房
    actual_check_out = Column(DateTime)                    # 实际退房
    number_of_guests = Column(Integer, default=1)
    created_at = Column(DateTime, default=datetime.now)

    stay_record = relationship("StayRecord", back_populates="stay_details")
    room = relationship("Room", back_populates="stay_details")
    guests_in_residence = relationship("GuestInResidence", back_populates="stay_detail")


class GuestInResidence(Base):
    """在住客人登记"""
    __tablename__ = "guests_in_residence"

    id = Column(Integer, primary_key=True, index=True)
    stay_detail_id = Column(Integer, ForeignKey("stay_details.id"), nullable=False)
    customer_id = Column(Integer, ForeignKey("customers.id"))

    stay_detail = relationship("StayDetail", back_populates="guests_in_residence")


# ============== 账本对象 ==============

class GuestFolio(Base):
    """
    账单对象 (Folio)
    total_charges / total_payments / balance 为派生值，
    始终由未作废交易全量重算，不做增量累加
    """
    __tablename__ = "guest_folios"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(20), unique=True, nullable=False)
    folio_type = Column(SQLEnum(FolioType), nullable=False, default=FolioType.GUEST)
    status = Column(SQLEnum(FolioStatus), nullable=False, default=FolioStatus.OPEN)
    bill_to_customer_id = Column(Integer, ForeignKey("customers.id"), nullable=False)
    reservation_id = Column(Integer, ForeignKey("reservations.id"))
    stay_record_id = Column(Integer, ForeignKey("stay_records.id"))
    stay_detail_id = Column(Integer, ForeignKey("stay_details.id"))
    total_charges = Column(Numeric(15, 2), nullable=False, default=0)
    total_payments = Column(Numeric(15, 2), nullable=False, default=0)
    balance = Column(Numeric(15, 2), nullable=False, default=0)
    notes = Column(Text)
    closed_at = Column(DateTime)
    closed_by = Column(Integer, ForeignKey("employees.id"))
    created_at = Column(DateTime, default=datetime.now)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)

    bill_to_customer = relationship("Customer")
    reservation = relationship("Reservation")
    stay_record = relationship("StayRecord", back_populates="guest_folios")
    stay_detail = relationship("StayDetail")
    transactions = relationship(
        "FolioTransaction", back_populates="folio", order_by="FolioTransaction.id"
    )

    @property
    def is_open(self) -> bool:
        return self.status == FolioStatus.OPEN


class FolioTransaction(Base):
    """
    账单交易
    只增不删，作废是唯一的修改途径；作废交易保留用于审计
    """
    __tablename__ = "folio_transactions"
    __table_args__ = (
        # 夜审自动入账唯一性：同一账单、房间明细、类别、营业日仅一条有效记录
        Index(
            "uq_folio_tx_auto_posting",
            "guest_folio_id", "stay_detail_id", "category", "posting_date",
            unique=True,
            sqlite_where=text("is_auto_posted = 1 AND is_void = 0"),
            postgresql_where=text("is_auto_posted AND NOT is_void"),
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(20), unique=True, nullable=False)
    guest_folio_id = Column(Integer, ForeignKey("guest_folios.id"), nullable=False, index=True)
    transaction_type = Column(SQLEnum(TransactionType), nullable=False)
    category = Column(SQLEnum(TransactionCategory), nullable=False)
    amount = Column(Numeric(15, 2), nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    unit_price = Column(Numeric(15, 2))
    description = Column(String(255))
    posting_date = Column(Date, nullable=False, index=True)     # 营业日
    transaction_date = Column(DateTime, default=datetime.now)  # 实际记账时间
    service_id = Column(Integer, ForeignKey("services.id"))
    payment_method_id = Column(Integer, ForeignKey("payment_methods.id"))
    promotion_id = Column(Integer, ForeignKey("promotions.id"))
    stay_detail_id = Column(Integer, ForeignKey("stay_details.id"))
    employee_id = Column(Integer, ForeignKey("employees.id"))
    is_auto_posted = Column(Boolean, nullable=False, default=False)  # 夜审自动入账
    is_void = Column(Boolean, nullable=False, default=False)
    void_reason = Column(Text)
    void_by = Column(Integer, ForeignKey("employees.id"))
    void_at = Column(DateTime)

    folio = relationship("GuestFolio", back_populates="transactions")
    service = relationship("Service")
    payment_method = relationship("PaymentMethod")
    promotion = relationship("Promotion")
    stay_detail = relationship("StayDetail")
    employee = relationship("Employee", foreign_keys=[employee_id])
    voided_by = relationship("Employee", foreign_keys=[void_by])


class RatePolicy(Base):
    """
    价格策略对象
    priority 越大优先级越高；同优先级时后创建者优先
    """
    __tablename__ = "rate_policies"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(20), unique=True, nullable=False)
    name = Column(String(100), nullable=False)
    room_type_id = Column(Integer, ForeignKey("room_types.id"), nullable=False)
    from_date = Column(Date, nullable=False)
    to_date = Column(Date, nullable=False)
    loop = Column(SQLEnum(RatePolicyLoop), nullable=False, default=RatePolicyLoop.NONE)
    price = Column(Numeric(15, 2), nullable=False)
    priority = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=datetime.now)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)

    room_type = relationship("RoomType", back_populates="rate_policies")


class RatePolicyLog(Base):
    """
    价格日志 - 按 (房型, 日期) 物化的价格缓存
    rate_policy_id 不设外键：策略删除后日志保留作为历史价格
    """
    __tablename__ = "rate_policy_logs"
    __table_args__ = (
        UniqueConstraint("room_type_id", "date", name="uq_rate_policy_log_room_type_date"),
    )

    id = Column(Integer, primary_key=True, index=True)
    room_type_id = Column(Integer, ForeignKey("room_types.id"), nullable=False)
    date = Column(Date, nullable=False)
    price = Column(Numeric(15, 2), nullable=False)
    rate_policy_id = Column(Integer, index=True)
    created_at = Column(DateTime, default=datetime.now)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)

    room_type = relationship("RoomType")


class DailySnapshot(Base):
    """每日经营快照，按日期唯一"""
    __tablename__ = "daily_snapshots"

    id = Column(Integer, primary_key=True, index=True)
    snapshot_date = Column(Date, unique=True, nullable=False)

    # 房态
    total_rooms = Column(Integer, default=0)
    available_rooms = Column(Integer, default=0)
    occupied_rooms = Column(Integer, default=0)
    reserved_rooms = Column(Integer, default=0)
    out_of_order_rooms = Column(Integer, default=0)
    occupancy_rate = Column(Numeric(5, 2), default=0)   # 百分比

    # 营收
    room_revenue = Column(Numeric(15, 2), default=0)
    service_revenue = Column(Numeric(15, 2), default=0)
    surcharge_revenue = Column(Numeric(15, 2), default=0)
    penalty_revenue = Column(Numeric(15, 2), default=0)
    total_revenue = Column(Numeric(15, 2), default=0)

    # 预订漏斗
    new_reservations = Column(Integer, default=0)
    cancelled_reservations = Column(Integer, default=0)
    check_ins = Column(Integer, default=0)
    check_outs = Column(Integer, default=0)
    no_shows = Column(Integer, default=0)

    total_guests = Column(Integer, default=0)
    average_daily_rate = Column(Numeric(15, 2), default=0)  # ADR
    rev_par = Column(Numeric(15, 2), default=0)             # RevPAR

    created_at = Column(DateTime, default=datetime.now)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)


class Invoice(Base):
    """
    发票对象
    由账单中未作废的借方交易开具，total_amount 为所含交易金额之和
    """
    __tablename__ = "invoices"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(20), unique=True, nullable=False)
    guest_folio_id = Column(Integer, ForeignKey("guest_folios.id"), nullable=False, index=True)
    invoice_to_customer_id = Column(Integer, ForeignKey("customers.id"), nullable=False)
    tax_id = Column(String(50))                # 税号
    total_amount = Column(Numeric(15, 2), nullable=False, default=0)
    invoice_date = Column(DateTime, default=datetime.now)
    employee_id = Column(Integer, ForeignKey("employees.id"))
    created_at = Column(DateTime, default=datetime.now)

    folio = relationship("GuestFolio")
    invoice_to_customer = relationship("Customer")
    employee = relationship("Employee")
    details = relationship(
        "InvoiceDetail", back_populates="invoice", order_by="InvoiceDetail.id"
    )


class InvoiceDetail(Base):
    """发票明细，每笔交易最多开票一次"""
    __tablename__ = "invoice_details"

    id = Column(Integer, primary_key=True, index=True)
    invoice_id = Column(Integer, ForeignKey("invoices.id"), nullable=False, index=True)
    transaction_id = Column(Integer, ForeignKey("folio_transactions.id"), nullable=False, unique=True)

    invoice = relationship("Invoice", back_populates="details")
    transaction = relationship("FolioTransaction")


class CodeSequence(Base):
    """
    编码序列 - 每个日期前缀一行，原子自增
    """
    __tablename__ = "code_sequences"

    prefix = Column(String(20), primary_key=True)
    last_value = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)
