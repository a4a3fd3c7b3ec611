from marketplace.models.user import User
from marketplace.models.credit_account import CreditAccount
from marketplace.models.credit_ledger import LedgerEntry
from marketplace.models.service_request import ServiceRequest
from marketplace.models.audit_log import AuditLog
from marketplace.models.failed_job import FailedJob

__all__ = [
    "User",
    "CreditAccount",
    "LedgerEntry",
    "ServiceRequest",
    "AuditLog",
    "FailedJob",
]
