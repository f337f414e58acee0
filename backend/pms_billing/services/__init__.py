# Business Services
from pms_billing.services.sequence_service import SequenceService
from pms_billing.services.rate_resolver import RateResolver
from pms_billing.services.rate_policy_log import RatePolicyLogCache
from pms_billing.services.rate_policy_service import RatePolicyService
from pms_billing.services.folio_service import FolioService
from pms_billing.services.invoice_service import InvoiceService
from pms_billing.services.nightly_service import NightlyService
from pms_billing.services.report_service import ReportService

__all__ = [
    'SequenceService', 'RateResolver', 'RatePolicyLogCache',
    'RatePolicyService', 'FolioService', 'InvoiceService', 'NightlyService', 'ReportService'
]
