# Ontology Models
from pms_billing.models.ontology import (
    RoomType, Room, Customer, Employee, Service, PaymentMethod, Promotion,
    Reservation, StayRecord, StayDetail, GuestInResidence,
    GuestFolio, FolioTransaction, RatePolicy, RatePolicyLog, DailySnapshot, Invoice, InvoiceDetail,
    CodeSequence
)

__all__ = [
    'RoomType', 'Room', 'Customer', 'Employee', 'Service', 'PaymentMethod', 'Promotion',
    'Reservation', 'StayRecord', 'StayDetail', 'GuestInResidence',
    'GuestFolio', 'FolioTransaction', 'RatePolicy', 'RatePolicyLog', 'DailySnapshot',
    'Invoice', 'InvoiceDetail', 'CodeSequence'
]
