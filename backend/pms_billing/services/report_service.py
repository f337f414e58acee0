"""
报表服务 - 本体操作层
基于每日快照的区间报表：入住率、营收、预订漏斗，以及按房型的房费营收
"""
import logging
from decimal import Decimal
from typing import List

from sqlalchemy.orm import Session

from pms_billing.exceptions import BadRequestError
from pms_billing.models.ontology import (
    DailySnapshot, FolioTransaction, Room, RoomType, StayDetail, TransactionCategory, TransactionType
)
from pms_billing.services.folio_service import ZERO, to_money
from pms_billing.services.rate_resolver import DateLike, to_business_date

logger = logging.getLogger(__name__)

HUNDRED = Decimal("100")


def _percentage(part: Decimal, whole: Decimal) -> Decimal:
    if whole <= ZERO:
        return to_money(ZERO)
    return to_money(Decimal(part) / Decimal(whole) * HUNDRED)


class ReportService:
    """报表服务"""

    def __init__(self, db: Session):
        self.db = db

    def _period(self, from_date: DateLike, to_date: DateLike):
        start = to_business_date(from_date)
        end = to_business_date(to_date)
        if end < start:
            raise BadRequestError("结束日期不能早于开始日期")
        return start, end

    def get_snapshots_in_range(self, from_date: DateLike, to_date: DateLike) -> List[DailySnapshot]:
        """区间内（含两端）的每日快照，按日期升序"""
        start, end = self._period(from_date, to_date)
        return self.db.query(DailySnapshot).filter(
            DailySnapshot.snapshot_date >= start,
            DailySnapshot.snapshot_date <= end
        ).order_by(DailySnapshot.snapshot_date.asc()).all()

    def get_occupancy_report(self, from_date: DateLike, to_date: DateLike) -> dict:
        """入住率报表"""
        start, end = self._period(from_date, to_date)
        snapshots = self.get_snapshots_in_range(start, end)
        days = len(snapshots)

        def average(values) -> Decimal:
            return to_money(sum(values, ZERO) / days) if days else to_money(ZERO)

        return {
            'period': {'from': start, 'to': end},
            'days': days,
            'average_occupancy': average(Decimal(s.occupancy_rate) for s in snapshots),
            'average_adr': average(Decimal(s.average_daily_rate) for s in snapshots),
            'average_rev_par': average(Decimal(s.rev_par) for s in snapshots),
            'total_room_nights': sum(s.occupied_rooms for s in snapshots),
            'data': [
                {
                    'date': s.snapshot_date,
                    'occupancy_rate': to_money(s.occupancy_rate),
                    'occupied_rooms': s.occupied_rooms,
                    'total_rooms': s.total_rooms,
                    'adr': to_money(s.average_daily_rate),
                    'rev_par': to_money(s.rev_par),
                }
                for s in snapshots
            ],
        }

    def get_revenue_report(self, from_date: DateLike, to_date: DateLike) -> dict:
        """营收报表：区间合计、各类营收占比与每日明细"""
        start, end = self._period(from_date, to_date)
        snapshots = self.get_snapshots_in_range(start, end)

        fields = ('room_revenue', 'service_revenue', 'surcharge_revenue', 'penalty_revenue', 'total_revenue')
        totals = {name: to_money(sum((to_money(getattr(s, name)) for s in snapshots), ZERO))
                  for name in fields}
        total = totals['total_revenue']

        return {
            'period': {'from': start, 'to': end},
            'days': len(snapshots),
            **totals,
            'breakdown': {
                'room_percentage': _percentage(totals['room_revenue'], total),
                'service_percentage': _percentage(totals['service_revenue'], total),
                'surcharge_percentage': _percentage(totals['surcharge_revenue'], total),
                'penalty_percentage': _percentage(totals['penalty_revenue'], total),
            },
            'daily_data': [
                dict(date=s.snapshot_date, **{name: to_money(getattr(s, name)) for name in fields})
                for s in snapshots
            ],
        }

    def get_booking_report(self, from_date: DateLike, to_date: DateLike) -> dict:
        """预订漏斗报表：新增、取消、入住、退房、未到店，取消率与未到店率以新增预订为基数"""
        start, end = self._period(from_date, to_date)
        snapshots = self.get_snapshots_in_range(start, end)

        totals = {
            'total_reservations': sum(s.new_reservations for s in snapshots),
            'total_cancellations': sum(s.cancelled_reservations for s in snapshots),
            'total_check_ins': sum(s.check_ins for s in snapshots),
            'total_check_outs': sum(s.check_outs for s in snapshots),
            'total_no_shows': sum(s.no_shows for s in snapshots),
        }
        base = Decimal(totals['total_reservations'])

        return {
            'period': {'from': start, 'to': end},
            'days': len(snapshots),
            **totals,
            'cancellation_rate': _percentage(Decimal(totals['total_cancellations']), base),
            'no_show_rate': _percentage(Decimal(totals['total_no_shows']), base),
            'daily_data': [
                {
                    'date': s.snapshot_date,
                    'reservations': s.new_reservations,
                    'cancellations': s.cancelled_reservations,
                    'check_ins': s.check_ins,
                    'check_outs': s.check_outs,
                    'no_shows': s.no_shows,
                }
                for s in snapshots
            ],
        }

    def get_revenue_by_room_type(self, from_date: DateLike, to_date: DateLike) -> dict:
        """按房型统计房费营收（直接取未作废的房费交易，不依赖快照）"""
        start, end = self._period(from_date, to_date)

        rows = self.db.query(FolioTransaction, RoomType).join(
            StayDetail, FolioTransaction.stay_detail_id == StayDetail.id
        ).join(
            Room, StayDetail.room_id == Room.id
        ).join(
            RoomType, Room.room_type_id == RoomType.id
        ).filter(
            FolioTransaction.category == TransactionCategory.ROOM_CHARGE,
            FolioTransaction.transaction_type == TransactionType.DEBIT,
            FolioTransaction.is_void == False,  # noqa: E712
            FolioTransaction.posting_date >= start,
            FolioTransaction.posting_date <= end
        ).order_by(RoomType.id).all()

        by_room_type = {}
        for tx, room_type in rows:
            entry = by_room_type.setdefault(room_type.id, {
                'room_type_id': room_type.id,
                'code': room_type.code,
                'name': room_type.name,
                'revenue': to_money(ZERO),
                'room_nights': 0,
            })
            entry['revenue'] = to_money(entry['revenue'] + to_money(tx.amount))
            entry['room_nights'] += tx.quantity

        data = list(by_room_type.values())
        total_revenue = to_money(sum((d['revenue'] for d in data), ZERO))
        for entry in data:
            entry['percentage'] = _percentage(entry['revenue'], total_revenue)

        logger.debug(f"Room type revenue {start}..{end}: {total_revenue} across {len(data)} room types")
        return {
            'period': {'from': start, 'to': end},
            'total_revenue': total_revenue,
            'by_room_type': data,
        }
