"""
夜审服务 - 批处理编排
每晚依次执行：房费入账 → 加人费入账 → 标记未到店预订 → 生成每日快照

每个步骤可单独重跑：
- 入账前检查当日是否已有有效记录，唯一索引兜底并发重复入账
- 单个住宿明细失败只记录在结果中，不中断整批处理
- "今天" 由注入的时钟决定
"""
import logging
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Callable, List, Optional

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from pms_billing.config import settings
from pms_billing.database import unit_of_work
from pms_billing.exceptions import BillingError, NotFoundError
from pms_billing.models.events import EventType, NightAuditStepData
from pms_billing.models.ontology import (
    DailySnapshot, FolioTransaction, GuestInResidence, Reservation, ReservationStatus,
    Room, RoomStatus, Service, ServiceGroup, StayDetail, StayDetailStatus, StayRecord,
    TransactionCategory, TransactionType
)
from pms_billing.models.schemas import TransactionCreate
from pms_billing.services.event_bus import Event, publish_event
from pms_billing.services.folio_service import FolioService, ZERO, to_money
from pms_billing.services.rate_policy_log import RatePolicyLogCache
from pms_billing.services.rate_resolver import DateLike, RateResolver, to_business_date

logger = logging.getLogger(__name__)

EXTRA_PERSON_MARKER = "Extra Person"

# 计入营收的借方类别（退款虽为借方，不计营收）
REVENUE_CATEGORIES = (
    TransactionCategory.ROOM_CHARGE,
    TransactionCategory.SERVICE_CHARGE,
    TransactionCategory.SURCHARGE,
    TransactionCategory.PENALTY,
)


def _item(stay_detail_id: int, success: bool = False, skipped: bool = False,
          transaction: Optional[FolioTransaction] = None, error: Optional[str] = None) -> dict:
    return {
        'stay_detail_id': stay_detail_id,
        'success': success,
        'skipped': skipped,
        'transaction_id': transaction.id if transaction is not None else None,
        'amount': to_money(transaction.amount) if transaction is not None else None,
        'error': error,
    }


def _day_bounds(day: date):
    start = datetime.combine(day, time.min)
    return start, start + timedelta(days=1)


class NightlyService:
    """夜审服务"""

    def __init__(self, db: Session, event_publisher: Callable[[Event], None] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.db = db
        self._publish_event = event_publisher
        self._clock = clock or datetime.now
        self.folios = FolioService(db, event_publisher=event_publisher, clock=self._clock)
        self.logs = RatePolicyLogCache(db)
        self.resolver = RateResolver(db)

    def _today(self) -> date:
        return self._clock().date()

    def _occupied_stay_details(self) -> List[StayDetail]:
        return self.db.query(StayDetail).filter(
            StayDetail.status == StayDetailStatus.OCCUPIED
        ).order_by(StayDetail.id.asc()).all()

    def _summarize(self, business_date: date, details: List[dict]) -> dict:
        successful = len([d for d in details if d['success']])
        skipped = len([d for d in details if d['skipped']])
        return {
            'date': business_date,
            'total_processed': len(details),
            'successful': successful,
            'skipped': skipped,
            'failed': len(details) - successful - skipped,
            'details': details,
        }

    def _publish_step(self, event_type: EventType, result: dict) -> None:
        publish_event(
            event_type,
            NightAuditStepData(
                business_date=result['date'],
                total_processed=result['total_processed'],
                successful=result['successful'],
                skipped=result['skipped'],
                failed=result['failed'],
                errors=[
                    f"stay_detail {d['stay_detail_id']}: {d['error']}"
                    for d in result['details'] if not d['success'] and not d['skipped']
                ]
            ).to_dict(),
            source="nightly_service",
            publisher=self._publish_event
        )

    # ============== 房价 ==============

    def _rate_anchor_date(self, stay_detail: StayDetail, today: date) -> date:
        """
        取价锚定日期：
        - 已超过预计退房日（续住）→ 入住日
        - 来自预订 → 预订下单日（锁定下单时的价格）
        - 其他 → 入住日
        """
        stay_record = stay_detail.stay_record
        check_in_date = to_business_date(stay_record.check_in_time)

        if to_business_date(stay_detail.expected_check_out) < today:
            return check_in_date

        reservation = stay_record.reservation
        if reservation is not None and reservation.reservation_date is not None:
            return to_business_date(reservation.reservation_date)
        return check_in_date

    def get_daily_room_rate(self, stay_detail: StayDetail, today: Optional[DateLike] = None) -> Decimal:
        """
        住宿明细的当晚房价
        锚定日期精确日志 → 锚定日期策略解析 → 锚定日期前最近日志 → 门市价
        """
        today = to_business_date(today) if today is not None else self._today()
        room_type = stay_detail.room.room_type
        anchor = self._rate_anchor_date(stay_detail, today)

        log = self.logs.find_for_date(room_type.id, anchor)
        if log is not None:
            return to_money(log.price)

        price = self.resolver.resolve_price(room_type.id, anchor)
        if price is not None:
            return to_money(price)

        log = self.logs.find_nearest_past(room_type.id, anchor)
        if log is not None:
            return to_money(log.price)

        return to_money(room_type.rack_rate)

    # ============== 入账步骤 ==============

    def _has_room_charge(self, stay_detail_id: int, business_date: date) -> bool:
        return self.db.query(FolioTransaction.id).filter(
            FolioTransaction.stay_detail_id == stay_detail_id,
            FolioTransaction.category == TransactionCategory.ROOM_CHARGE,
            FolioTransaction.posting_date == business_date,
            FolioTransaction.is_void == False  # noqa: E712
        ).first() is not None

    def _has_extra_person_charge(self, stay_detail_id: int, business_date: date) -> bool:
        return self.db.query(FolioTransaction.id).filter(
            FolioTransaction.stay_detail_id == stay_detail_id,
            FolioTransaction.category == TransactionCategory.SURCHARGE,
            FolioTransaction.posting_date == business_date,
            FolioTransaction.is_void == False,  # noqa: E712
            or_(
                FolioTransaction.is_auto_posted == True,  # noqa: E712
                FolioTransaction.description.contains(EXTRA_PERSON_MARKER)
            )
        ).first() is not None

    def _post_item(self, stay_detail: StayDetail, employee_id: Optional[int],
                   build: Callable[[], Optional[TransactionCreate]]) -> dict:
        """
        单个住宿明细入账；异常记录在结果中，不向上抛出
        build 返回 None 表示无需入账
        """
        stay_detail_id = stay_detail.id
        try:
            folio = self.folios.get_open_master_folio(stay_detail.stay_record_id)
            if folio is None:
                return _item(stay_detail_id, error="没有未关闭的主账单")

            data = build()
            if data is None:
                return _item(stay_detail_id, skipped=True, error="今日已入账")

            transaction = self.folios.add_transaction(folio.id, employee_id, data)
            return _item(stay_detail_id, success=True, transaction=transaction)
        except IntegrityError:
            # 唯一索引拦截：并发批次已经入账
            self.db.rollback()
            logger.info(f"Stay detail {stay_detail_id} already posted by a concurrent run")
            return _item(stay_detail_id, skipped=True, error="今日已入账")
        except BillingError as e:
            self.db.rollback()
            logger.warning(f"Nightly posting for stay detail {stay_detail_id} rejected: {e}")
            return _item(stay_detail_id, error=str(e))
        except Exception as e:
            self.db.rollback()
            logger.error(f"Nightly posting for stay detail {stay_detail_id} failed: {e}", exc_info=True)
            return _item(stay_detail_id, error=str(e))

    def post_nightly_room_charges(self, employee_id: Optional[int] = None) -> dict:
        """为所有在住房间入当晚房费"""
        today = self._today()
        details = []

        for stay_detail in self._occupied_stay_details():
            def build(stay_detail=stay_detail):
                if self._has_room_charge(stay_detail.id, today):
                    return None
                amount = self.get_daily_room_rate(stay_detail, today)
                room = stay_detail.room
                return TransactionCreate(
                    transaction_type=TransactionType.DEBIT,
                    category=TransactionCategory.ROOM_CHARGE,
                    amount=amount,
                    unit_price=amount,
                    description=f"Room Charge - {room.code} ({room.room_type.name})",
                    stay_detail_id=stay_detail.id,
                    posting_date=today,
                    is_auto_posted=True
                )

            details.append(self._post_item(stay_detail, employee_id, build))

        result = self._summarize(today, details)
        logger.info(
            f"Night audit {today}: room charges {result['successful']} posted, "
            f"{result['skipped']} skipped, {result['failed']} failed"
        )
        self._publish_step(EventType.ROOM_CHARGES_POSTED, result)
        return result

    @staticmethod
    def _guest_count(stay_detail: StayDetail) -> int:
        """登记的在住客人数，未登记时取入住人数"""
        return len(stay_detail.guests_in_residence) or (stay_detail.number_of_guests or 0)

    def _extra_person_service(self) -> Optional[Service]:
        return self.db.query(Service).filter(
            Service.service_group == ServiceGroup.SURCHARGE,
            Service.code.contains(settings.EXTRA_PERSON_SERVICE_CODE)
        ).first()

    def post_extra_person_charges(self, employee_id: Optional[int] = None) -> dict:
        """超出标准入住人数的房间入加人费"""
        today = self._today()
        service = self._extra_person_service()
        service_id = service.id if service else None
        details = []

        for stay_detail in self._occupied_stay_details():
            room_type = stay_detail.room.room_type
            base_capacity = room_type.base_capacity or 0
            guests = self._guest_count(stay_detail)
            if guests <= base_capacity:
                continue

            def build(stay_detail=stay_detail, extra=guests - base_capacity, room_type=room_type):
                if self._has_extra_person_charge(stay_detail.id, today):
                    return None
                fee = to_money(room_type.extra_person_fee)
                return TransactionCreate(
                    transaction_type=TransactionType.DEBIT,
                    category=TransactionCategory.SURCHARGE,
                    amount=to_money(fee * extra),
                    quantity=extra,
                    unit_price=fee,
                    description=(
                        f"{EXTRA_PERSON_MARKER} Charge ({extra} extra guest{'s' if extra > 1 else ''})"
                    ),
                    service_id=service_id,
                    stay_detail_id=stay_detail.id,
                    posting_date=today,
                    is_auto_posted=True
                )

            details.append(self._post_item(stay_detail, employee_id, build))

        result = self._summarize(today, details)
        logger.info(
            f"Night audit {today}: extra person charges {result['successful']} posted, "
            f"{result['skipped']} skipped, {result['failed']} failed"
        )
        self._publish_step(EventType.EXTRA_PERSON_POSTED, result)
        return result

    # ============== 预订 ==============

    def mark_no_show_reservations(self) -> dict:
        """预计昨天到店但仍为已确认状态的预订标记为未到店"""
        yesterday = self._today() - timedelta(days=1)
        start, end = _day_bounds(yesterday)

        with unit_of_work(self.db):
            count = self.db.query(Reservation).filter(
                Reservation.status == ReservationStatus.CONFIRMED,
                Reservation.expected_arrival >= start,
                Reservation.expected_arrival < end
            ).update(
                {
                    Reservation.status: ReservationStatus.NO_SHOW,
                    Reservation.updated_at: self._clock()
                },
                synchronize_session=False
            )

        logger.info(f"Night audit: {count} reservations for {yesterday} marked as no-show")
        publish_event(
            EventType.NO_SHOWS_MARKED,
            NightAuditStepData(
                business_date=yesterday,
                total_processed=count,
                successful=count
            ).to_dict(),
            source="nightly_service",
            publisher=self._publish_event
        )
        return {'date': yesterday, 'marked_as_no_show': count}

    # ============== 快照 ==============

    def _room_status_counts(self) -> dict:
        counts = {status: 0 for status in RoomStatus}
        for status, count in self.db.query(Room.status, func.count(Room.id)).group_by(Room.status).all():
            counts[RoomStatus(status)] = count
        return counts

    def _revenue_buckets(self, day: date) -> dict:
        buckets = {category: ZERO for category in REVENUE_CATEGORIES}
        for tx in self.db.query(FolioTransaction).filter(
            FolioTransaction.posting_date == day,
            FolioTransaction.transaction_type == TransactionType.DEBIT,
            FolioTransaction.is_void == False  # noqa: E712
        ).all():
            category = TransactionCategory(tx.category)
            if category in buckets:
                buckets[category] += to_money(tx.amount)
        return buckets

    def _funnel_counts(self, day: date) -> dict:
        start, end = _day_bounds(day)
        return {
            'new_reservations': self.db.query(Reservation).filter(
                Reservation.created_at >= start,
                Reservation.created_at < end
            ).count(),
            'cancelled_reservations': self.db.query(Reservation).filter(
                Reservation.status == ReservationStatus.CANCELLED,
                Reservation.updated_at >= start,
                Reservation.updated_at < end
            ).count(),
            'check_ins': self.db.query(StayRecord).filter(
                StayRecord.check_in_time >= start,
                StayRecord.check_in_time < end
            ).count(),
            'check_outs': self.db.query(StayDetail).filter(
                StayDetail.actual_check_out >= start,
                StayDetail.actual_check_out < end
            ).count(),
            'no_shows': self.db.query(Reservation).filter(
                Reservation.status == ReservationStatus.NO_SHOW,
                Reservation.updated_at >= start,
                Reservation.updated_at < end
            ).count(),
        }

    def create_daily_snapshot(self, snapshot_date: Optional[DateLike] = None) -> DailySnapshot:
        """生成（或覆盖）指定日期的经营快照"""
        day = to_business_date(snapshot_date) if snapshot_date is not None else self._today()

        status_counts = self._room_status_counts()
        total_rooms = sum(status_counts.values())
        occupied_rooms = status_counts[RoomStatus.OCCUPIED]
        out_of_order_rooms = status_counts[RoomStatus.OUT_OF_ORDER] + status_counts[RoomStatus.MAINTENANCE]
        sellable_rooms = total_rooms - out_of_order_rooms

        occupancy_rate = (
            to_money(Decimal(occupied_rooms) / Decimal(sellable_rooms) * 100)
            if sellable_rooms > 0 else to_money(ZERO)
        )

        buckets = self._revenue_buckets(day)
        room_revenue = to_money(buckets[TransactionCategory.ROOM_CHARGE])
        total_revenue = to_money(sum(buckets.values(), ZERO))

        average_daily_rate = (
            to_money(room_revenue / occupied_rooms) if occupied_rooms > 0 else to_money(ZERO)
        )
        rev_par = to_money(room_revenue / sellable_rooms) if sellable_rooms > 0 else to_money(ZERO)

        total_guests = self.db.query(func.count(GuestInResidence.id)).join(
            StayDetail, GuestInResidence.stay_detail_id == StayDetail.id
        ).filter(StayDetail.status == StayDetailStatus.OCCUPIED).scalar() or 0

        values = dict(
            total_rooms=total_rooms,
            available_rooms=status_counts[RoomStatus.AVAILABLE],
            occupied_rooms=occupied_rooms,
            reserved_rooms=status_counts[RoomStatus.RESERVED],
            out_of_order_rooms=out_of_order_rooms,
            occupancy_rate=occupancy_rate,
            room_revenue=room_revenue,
            service_revenue=to_money(buckets[TransactionCategory.SERVICE_CHARGE]),
            surcharge_revenue=to_money(buckets[TransactionCategory.SURCHARGE]),
            penalty_revenue=to_money(buckets[TransactionCategory.PENALTY]),
            total_revenue=total_revenue,
            total_guests=total_guests,
            average_daily_rate=average_daily_rate,
            rev_par=rev_par,
            **self._funnel_counts(day)
        )

        with unit_of_work(self.db):
            snapshot = self.db.query(DailySnapshot).filter(
                DailySnapshot.snapshot_date == day
            ).first()
            if snapshot is None:
                snapshot = DailySnapshot(snapshot_date=day, created_at=self._clock())
                self.db.add(snapshot)
            for key, value in values.items():
                setattr(snapshot, key, value)
            snapshot.updated_at = self._clock()

        self.db.refresh(snapshot)
        logger.info(
            f"Daily snapshot {day}: occupancy {occupancy_rate}%, revenue {total_revenue}"
        )
        publish_event(
            EventType.SNAPSHOT_CREATED,
            NightAuditStepData(business_date=day, total_processed=1, successful=1).to_dict(),
            source="nightly_service",
            publisher=self._publish_event
        )
        return snapshot

    def get_daily_snapshot(self, snapshot_date: DateLike) -> DailySnapshot:
        snapshot = self.db.query(DailySnapshot).filter(
            DailySnapshot.snapshot_date == to_business_date(snapshot_date)
        ).first()
        if not snapshot:
            raise NotFoundError("每日快照不存在")
        return snapshot

    # ============== 编排 ==============

    def run_nightly_jobs(self, employee_id: Optional[int] = None) -> dict:
        """按固定顺序执行全部夜审步骤"""
        today = self._today()
        logger.info(f"Night audit started for {today}")

        results = {
            'room_charges': self.post_nightly_room_charges(employee_id),
            'extra_person_charges': self.post_extra_person_charges(employee_id),
            'no_show_marking': self.mark_no_show_reservations(),
            'snapshot': self.create_daily_snapshot(today),
        }

        failed = results['room_charges']['failed'] + results['extra_person_charges']['failed']
        logger.info(f"Night audit finished for {today} with {failed} failed items")
        publish_event(
            EventType.NIGHT_AUDIT_COMPLETED,
            NightAuditStepData(
                business_date=today,
                total_processed=(
                    results['room_charges']['total_processed']
                    + results['extra_person_charges']['total_processed']
                ),
                successful=(
                    results['room_charges']['successful']
                    + results['extra_person_charges']['successful']
                ),
                skipped=(
                    results['room_charges']['skipped']
                    + results['extra_person_charges']['skipped']
                ),
                failed=failed
            ).to_dict(),
            source="nightly_service",
            publisher=self._publish_event
        )
        return results
