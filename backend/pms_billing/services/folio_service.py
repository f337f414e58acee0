"""
账单服务 - 本体操作层
管理 GuestFolio 和 FolioTransaction 对象

账本规则：
- 交易只增不删，作废是唯一的修改途径
- 每次入账/作废后由未作废交易全量重算合计与余额，再用 SQL 聚合独立校验
- 余额不为零的账单不能关闭，关闭后不再接受入账、作废与修改
"""
import logging
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from pms_billing.config import settings
from pms_billing.database import unit_of_work
from pms_billing.exceptions import BadRequestError, LedgerInvariantError, NotFoundError
from pms_billing.models.events import (
    EventType, FolioClosedData, FolioCreatedData, TransactionPostedData, TransactionVoidedData
)
from pms_billing.models.ontology import (
    Customer, FolioStatus, FolioTransaction, FolioType, GuestFolio, PaymentMethod,
    Promotion, Service, StayDetail, StayRecord, TransactionCategory, TransactionType
)
from pms_billing.models.schemas import (
    ChargeCreate, DiscountCreate, FolioCreate, FolioFilter, FolioUpdate, PageParams,
    PaymentCreate, RoomChargeCreate, ServiceChargeCreate, TransactionCreate
)
from pms_billing.services.event_bus import Event, publish_event
from pms_billing.services.pagination import paginate
from pms_billing.services.sequence_service import SequenceService

logger = logging.getLogger(__name__)

ZERO = Decimal("0")

SORTABLE_FIELDS = (
    "created_at", "updated_at", "code", "status", "folio_type",
    "total_charges", "total_payments", "balance",
)


def to_money(value) -> Decimal:
    """金额统一保留两位小数"""
    if value is None:
        return ZERO.quantize(settings.MONEY_QUANTUM)
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(settings.MONEY_QUANTUM)


class FolioService:
    """账单服务"""

    def __init__(self, db: Session, event_publisher: Callable[[Event], None] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.db = db
        self._publish_event = event_publisher
        self._clock = clock or datetime.now
        self.sequences = SequenceService(db, clock=self._clock)

    # ============== 查询 ==============

    def get_folio(self, folio_id: int) -> Optional[GuestFolio]:
        """获取账单"""
        return self.db.query(GuestFolio).filter(GuestFolio.id == folio_id).first()

    def get_folio_by_id(self, folio_id: int) -> GuestFolio:
        folio = self.get_folio(folio_id)
        if not folio:
            raise NotFoundError("账单不存在")
        return folio

    def get_transaction(self, transaction_id: int) -> Optional[FolioTransaction]:
        return self.db.query(FolioTransaction).filter(
            FolioTransaction.id == transaction_id
        ).first()

    def get_open_master_folio(self, stay_record_id: int) -> Optional[GuestFolio]:
        """住宿记录下未关闭的主账单（夜审入账目标）"""
        return self.db.query(GuestFolio).filter(
            GuestFolio.stay_record_id == stay_record_id,
            GuestFolio.folio_type == FolioType.MASTER,
            GuestFolio.status == FolioStatus.OPEN
        ).order_by(GuestFolio.id.asc()).first()

    def query_folios(self, filters: Optional[FolioFilter] = None,
                     page: Optional[PageParams] = None) -> dict:
        """分页查询账单"""
        filters = filters or FolioFilter()
        query = self.db.query(GuestFolio)

        if filters.folio_type:
            query = query.filter(GuestFolio.folio_type == filters.folio_type)
        if filters.status:
            query = query.filter(GuestFolio.status == filters.status)
        if filters.bill_to_customer_id:
            query = query.filter(GuestFolio.bill_to_customer_id == filters.bill_to_customer_id)
        if filters.stay_record_id:
            query = query.filter(GuestFolio.stay_record_id == filters.stay_record_id)
        if filters.code:
            query = query.filter(GuestFolio.code.startswith(filters.code))

        return paginate(query, GuestFolio, page, SORTABLE_FIELDS)

    def get_folio_summary(self, folio_id: int) -> dict:
        """
        账单汇总：未作废交易按类别分组（八个类别全部列出，空类别小计为 0）
        """
        folio = self.get_folio_by_id(folio_id)

        breakdown = {
            category.breakdown_key: {
                'category': category.value,
                'label': category.label,
                'transaction_type': category.direction.value,
                'subtotal': to_money(ZERO),
                'count': 0,
                'transactions': [],
            }
            for category in TransactionCategory
        }

        active = [tx for tx in folio.transactions if not tx.is_void]
        for tx in active:
            group = breakdown[TransactionCategory(tx.category).breakdown_key]
            group['subtotal'] = to_money(group['subtotal'] + to_money(tx.amount))
            group['count'] += 1
            group['transactions'].append(tx)

        return {
            'folio': folio,
            'total_charges': to_money(folio.total_charges),
            'total_payments': to_money(folio.total_payments),
            'balance': to_money(folio.balance),
            'transaction_count': len(active),
            'void_count': len(folio.transactions) - len(active),
            'breakdown': breakdown,
        }

    # ============== 账单生命周期 ==============

    def _validate_references(self, data: FolioCreate) -> Tuple[Optional[int], Optional[int], Optional[int]]:
        """按账单类型校验关联对象，返回 (reservation_id, stay_record_id, stay_detail_id)"""
        if data.folio_type == FolioType.NON_RESIDENT:
            if data.stay_record_id or data.stay_detail_id:
                raise BadRequestError("非住店账单不能关联住宿记录或住宿明细")
            return None, None, None

        if not data.stay_record_id:
            raise BadRequestError("房间账单和主账单必须关联住宿记录")

        stay_record = self.db.query(StayRecord).filter(
            StayRecord.id == data.stay_record_id
        ).first()
        if not stay_record:
            raise BadRequestError("住宿记录不存在")

        reservation_id = data.reservation_id or stay_record.reservation_id

        if data.folio_type == FolioType.MASTER:
            if data.stay_detail_id:
                raise BadRequestError("主账单不能关联住宿明细")
            return reservation_id, stay_record.id, None

        # GUEST
        if not data.stay_detail_id:
            raise BadRequestError("房间账单必须关联住宿明细")
        stay_detail = self.db.query(StayDetail).filter(
            StayDetail.id == data.stay_detail_id
        ).first()
        if not stay_detail:
            raise BadRequestError("住宿明细不存在")
        if stay_detail.stay_record_id != stay_record.id:
            raise BadRequestError("住宿明细不属于该住宿记录")
        return reservation_id, stay_record.id, stay_detail.id

    def _ensure_customer(self, customer_id: int) -> Customer:
        customer = self.db.query(Customer).filter(Customer.id == customer_id).first()
        if not customer:
            raise BadRequestError("客户不存在")
        return customer

    def create_folio(self, data: FolioCreate) -> GuestFolio:
        """创建账单"""
        with unit_of_work(self.db):
            self._ensure_customer(data.bill_to_customer_id)
            reservation_id, stay_record_id, stay_detail_id = self._validate_references(data)

            folio = GuestFolio(
                code=self.sequences.next_folio_code(),
                folio_type=data.folio_type,
                status=FolioStatus.OPEN,
                bill_to_customer_id=data.bill_to_customer_id,
                reservation_id=reservation_id,
                stay_record_id=stay_record_id,
                stay_detail_id=stay_detail_id,
                total_charges=ZERO,
                total_payments=ZERO,
                balance=ZERO,
                notes=data.notes,
                created_at=self._clock(),
                updated_at=self._clock()
            )
            self.db.add(folio)
            self.db.flush()

        self.db.refresh(folio)
        logger.info(f"Folio {folio.code} ({folio.folio_type.value}) created")

        publish_event(
            EventType.FOLIO_CREATED,
            FolioCreatedData(
                folio_id=folio.id,
                folio_code=folio.code,
                folio_type=folio.folio_type.value,
                bill_to_customer_id=folio.bill_to_customer_id,
                stay_record_id=folio.stay_record_id,
                stay_detail_id=folio.stay_detail_id
            ).to_dict(),
            source="folio_service",
            publisher=self._publish_event
        )
        return folio

    def update_folio(self, folio_id: int, data: FolioUpdate) -> GuestFolio:
        """更新账单付款方和备注"""
        with unit_of_work(self.db):
            folio = self.get_folio_by_id(folio_id)
            if not folio.is_open:
                raise BadRequestError("已关闭的账单不能修改")

            update_data = data.model_dump(exclude_unset=True)
            if update_data.get('bill_to_customer_id') is not None:
                self._ensure_customer(update_data['bill_to_customer_id'])
            elif 'bill_to_customer_id' in update_data:
                del update_data['bill_to_customer_id']

            for key, value in update_data.items():
                setattr(folio, key, value)
            folio.updated_at = self._clock()

        self.db.refresh(folio)
        return folio

    def close_folio(self, folio_id: int, employee_id: Optional[int] = None) -> GuestFolio:
        """关闭账单（余额必须为零）"""
        with unit_of_work(self.db):
            folio = self.get_folio_by_id(folio_id)
            if not folio.is_open:
                raise BadRequestError("账单已关闭")

            balance = to_money(folio.balance)
            if balance != ZERO:
                raise BadRequestError(
                    f"账单存在未结余额 {balance}，无法关闭",
                    context={'folio_id': folio.id, 'balance': str(balance)}
                )

            folio.status = FolioStatus.CLOSED
            folio.closed_at = self._clock()
            folio.closed_by = employee_id
            folio.updated_at = folio.closed_at

        self.db.refresh(folio)
        logger.info(f"Folio {folio.code} closed by employee {employee_id}")

        publish_event(
            EventType.FOLIO_CLOSED,
            FolioClosedData(
                folio_id=folio.id,
                folio_code=folio.code,
                total_charges=to_money(folio.total_charges),
                total_payments=to_money(folio.total_payments),
                operator_id=employee_id
            ).to_dict(),
            source="folio_service",
            publisher=self._publish_event
        )
        return folio

    # ============== 余额 ==============

    def _recalculate(self, folio: GuestFolio) -> GuestFolio:
        """由未作废交易全量重算合计与余额，并立即校验"""
        self.db.flush()
        charges = ZERO
        payments = ZERO
        for tx in self.db.query(FolioTransaction).filter(
            FolioTransaction.guest_folio_id == folio.id,
            FolioTransaction.is_void == False  # noqa: E712
        ).all():
            if tx.transaction_type == TransactionType.DEBIT:
                charges += to_money(tx.amount)
            else:
                payments += to_money(tx.amount)

        folio.total_charges = to_money(charges)
        folio.total_payments = to_money(payments)
        folio.balance = to_money(charges - payments)
        folio.updated_at = self._clock()
        self.db.flush()

        self._verify(folio)
        return folio

    def _aggregate_totals(self, folio_id: int) -> Dict[TransactionType, Decimal]:
        rows = self.db.query(
            FolioTransaction.transaction_type,
            func.sum(FolioTransaction.amount)
        ).filter(
            FolioTransaction.guest_folio_id == folio_id,
            FolioTransaction.is_void == False  # noqa: E712
        ).group_by(FolioTransaction.transaction_type).all()

        totals = {TransactionType.DEBIT: ZERO, TransactionType.CREDIT: ZERO}
        for transaction_type, total in rows:
            totals[TransactionType(transaction_type)] = to_money(total)
        return totals

    def _verify(self, folio: GuestFolio) -> None:
        totals = self._aggregate_totals(folio.id)
        expected_charges = totals[TransactionType.DEBIT]
        expected_payments = totals[TransactionType.CREDIT]
        expected_balance = to_money(expected_charges - expected_payments)

        if (to_money(folio.total_charges) != expected_charges
                or to_money(folio.total_payments) != expected_payments
                or to_money(folio.balance) != expected_balance):
            logger.error(
                f"Folio {folio.code} ledger mismatch: "
                f"charges {folio.total_charges}/{expected_charges}, "
                f"payments {folio.total_payments}/{expected_payments}"
            )
            raise LedgerInvariantError(folio.id, expected_balance, to_money(folio.balance))

    def recalculate_balance(self, folio_id: int) -> GuestFolio:
        """重算账单余额（维护任务使用）"""
        with unit_of_work(self.db):
            folio = self.get_folio_by_id(folio_id)
            self._recalculate(folio)
        self.db.refresh(folio)
        return folio

    def verify_balance(self, folio_id: int) -> bool:
        """校验已存储的合计与未作废交易一致，不一致时抛出 LedgerInvariantError"""
        folio = self.get_folio_by_id(folio_id)
        self._verify(folio)
        return True

    # ============== 入账 ==============

    def add_transaction(self, folio_id: int, employee_id: Optional[int],
                        data: TransactionCreate) -> FolioTransaction:
        """
        入账（所有类别的统一入口）

        Raises:
            NotFoundError: 账单不存在
            BadRequestError: 账单已关闭或方向与类别不符
        """
        with unit_of_work(self.db):
            folio = self.get_folio_by_id(folio_id)
            if not folio.is_open:
                raise BadRequestError("已关闭的账单不能入账")

            if data.transaction_type != data.category.direction:
                raise BadRequestError(
                    f"{data.category.label} 只能记为 {data.category.direction.value}"
                )

            now = self._clock()
            transaction = FolioTransaction(
                code=self.sequences.next_transaction_code(),
                guest_folio_id=folio.id,
                transaction_type=data.transaction_type,
                category=data.category,
                amount=to_money(data.amount),
                quantity=data.quantity,
                unit_price=to_money(data.unit_price if data.unit_price is not None else data.amount),
                description=data.description or data.category.label,
                posting_date=data.posting_date or now.date(),
                transaction_date=now,
                service_id=data.service_id,
                payment_method_id=data.payment_method_id,
                promotion_id=data.promotion_id,
                stay_detail_id=data.stay_detail_id,
                employee_id=employee_id,
                is_auto_posted=data.is_auto_posted,
                is_void=False
            )
            self.db.add(transaction)
            self._recalculate(folio)

        self.db.refresh(transaction)
        self.db.refresh(folio)
        logger.info(
            f"Posted {transaction.code} {transaction.category.value} "
            f"{transaction.amount} to folio {folio.code}, balance {folio.balance}"
        )

        publish_event(
            EventType.TRANSACTION_POSTED,
            TransactionPostedData(
                folio_id=folio.id,
                transaction_id=transaction.id,
                transaction_code=transaction.code,
                transaction_type=transaction.transaction_type.value,
                category=transaction.category.value,
                amount=to_money(transaction.amount),
                balance=to_money(folio.balance),
                posting_date=transaction.posting_date,
                operator_id=employee_id
            ).to_dict(),
            source="folio_service",
            publisher=self._publish_event
        )
        return transaction

    def add_room_charge(self, folio_id: int, employee_id: Optional[int],
                        data: RoomChargeCreate) -> FolioTransaction:
        """房费入账"""
        stay_detail = self.db.query(StayDetail).filter(StayDetail.id == data.stay_detail_id).first()
        if not stay_detail:
            raise BadRequestError("住宿明细不存在")

        return self.add_transaction(folio_id, employee_id, TransactionCreate(
            transaction_type=TransactionType.DEBIT,
            category=TransactionCategory.ROOM_CHARGE,
            amount=data.amount,
            description=data.description,
            stay_detail_id=stay_detail.id,
            posting_date=data.posting_date
        ))

    def add_service_charge(self, folio_id: int, employee_id: Optional[int],
                           data: ServiceChargeCreate) -> FolioTransaction:
        """消费入账，金额 = 数量 × 单价（单价默认取服务价格）"""
        service = self.db.query(Service).filter(Service.id == data.service_id).first()
        if not service:
            raise BadRequestError("服务不存在")

        unit_price = to_money(data.unit_price if data.unit_price is not None else service.unit_price)
        return self.add_transaction(folio_id, employee_id, TransactionCreate(
            transaction_type=TransactionType.DEBIT,
            category=TransactionCategory.SERVICE_CHARGE,
            amount=to_money(unit_price * data.quantity),
            quantity=data.quantity,
            unit_price=unit_price,
            description=data.description or service.name,
            service_id=service.id,
            stay_detail_id=data.stay_detail_id,
            posting_date=data.posting_date
        ))

    def _ensure_payment_method(self, payment_method_id: int) -> PaymentMethod:
        method = self.db.query(PaymentMethod).filter(PaymentMethod.id == payment_method_id).first()
        if not method:
            raise BadRequestError("支付方式不存在")
        return method

    def _post_payment_like(self, folio_id: int, employee_id: Optional[int], data: PaymentCreate,
                           category: TransactionCategory) -> FolioTransaction:
        method = self._ensure_payment_method(data.payment_method_id)
        return self.add_transaction(folio_id, employee_id, TransactionCreate(
            transaction_type=category.direction,
            category=category,
            amount=data.amount,
            description=data.description or f"{category.label} - {method.name}",
            payment_method_id=method.id
        ))

    def add_payment(self, folio_id: int, employee_id: Optional[int],
                    data: PaymentCreate) -> FolioTransaction:
        """收款"""
        return self._post_payment_like(folio_id, employee_id, data, TransactionCategory.PAYMENT)

    def add_deposit(self, folio_id: int, employee_id: Optional[int],
                    data: PaymentCreate) -> FolioTransaction:
        """押金"""
        return self._post_payment_like(folio_id, employee_id, data, TransactionCategory.DEPOSIT)

    def add_refund(self, folio_id: int, employee_id: Optional[int],
                   data: PaymentCreate) -> FolioTransaction:
        """退款（借方，增加余额）"""
        return self._post_payment_like(folio_id, employee_id, data, TransactionCategory.REFUND)

    def add_discount(self, folio_id: int, employee_id: Optional[int],
                     data: DiscountCreate) -> FolioTransaction:
        """折扣"""
        description = data.description
        if data.promotion_id is not None:
            promotion = self.db.query(Promotion).filter(Promotion.id == data.promotion_id).first()
            if not promotion:
                raise BadRequestError("促销活动不存在")
            description = description or f"Discount - {promotion.name}"

        return self.add_transaction(folio_id, employee_id, TransactionCreate(
            transaction_type=TransactionType.CREDIT,
            category=TransactionCategory.DISCOUNT,
            amount=data.amount,
            description=description,
            promotion_id=data.promotion_id
        ))

    def _post_charge(self, folio_id: int, employee_id: Optional[int], data: ChargeCreate,
                     category: TransactionCategory) -> FolioTransaction:
        if data.service_id is not None:
            if not self.db.query(Service).filter(Service.id == data.service_id).first():
                raise BadRequestError("服务不存在")

        return self.add_transaction(folio_id, employee_id, TransactionCreate(
            transaction_type=TransactionType.DEBIT,
            category=category,
            amount=data.amount,
            description=data.description,
            service_id=data.service_id,
            stay_detail_id=data.stay_detail_id,
            posting_date=data.posting_date
        ))

    def add_surcharge(self, folio_id: int, employee_id: Optional[int],
                      data: ChargeCreate) -> FolioTransaction:
        """附加费"""
        return self._post_charge(folio_id, employee_id, data, TransactionCategory.SURCHARGE)

    def add_penalty(self, folio_id: int, employee_id: Optional[int],
                    data: ChargeCreate) -> FolioTransaction:
        """罚金（损坏赔偿、迟退等）"""
        return self._post_charge(folio_id, employee_id, data, TransactionCategory.PENALTY)

    # ============== 作废 ==============

    def void_transaction(self, transaction_id: int, employee_id: Optional[int],
                         reason: str) -> FolioTransaction:
        """作废交易并重算账单"""
        if not reason or not reason.strip():
            raise BadRequestError("作废原因不能为空")

        with unit_of_work(self.db):
            transaction = self.get_transaction(transaction_id)
            if not transaction:
                raise NotFoundError("交易不存在")
            if transaction.is_void:
                raise BadRequestError("交易已作废")

            folio = transaction.folio
            if not folio.is_open:
                raise BadRequestError("已关闭账单的交易不能作废")

            transaction.is_void = True
            transaction.void_reason = reason.strip()
            transaction.void_by = employee_id
            transaction.void_at = self._clock()
            self._recalculate(folio)

        self.db.refresh(transaction)
        self.db.refresh(folio)
        logger.info(
            f"Voided {transaction.code} ({transaction.amount}) on folio {folio.code}: {transaction.void_reason}"
        )

        publish_event(
            EventType.TRANSACTION_VOIDED,
            TransactionVoidedData(
                folio_id=folio.id,
                transaction_id=transaction.id,
                transaction_code=transaction.code,
                amount=to_money(transaction.amount),
                balance=to_money(folio.balance),
                reason=transaction.void_reason,
                operator_id=employee_id
            ).to_dict(),
            source="folio_service",
            publisher=self._publish_event
        )
        return transaction
