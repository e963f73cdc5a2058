from aira_credits.models.user import User
from aira_credits.models.credit_account import CreditAccount
from aira_credits.models.credit_ledger import CreditLedgerEntry
from aira_credits.models.payment_order import PaymentOrder
from aira_credits.models.audit_log import AuditLog

__all__ = [
    "User",
    "CreditAccount",
    "CreditLedgerEntry",
    "PaymentOrder",
    "AuditLog",
]
