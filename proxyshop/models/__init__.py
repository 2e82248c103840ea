from proxyshop.models.user import UserDocument
from proxyshop.models.order import OrderDocument
from proxyshop.models.proxy import ProxyDocument
from proxyshop.models.transaction import TransactionDocument
from proxyshop.models.reconciliation_case import ReconciliationCaseDocument
from proxyshop.models.failed_job import FailedJob

DOCUMENT_MODELS = [
    UserDocument,
    OrderDocument,
    ProxyDocument,
    TransactionDocument,
    ReconciliationCaseDocument,
    FailedJob,
]

__all__ = [
    "UserDocument",
    "OrderDocument",
    "ProxyDocument",
    "TransactionDocument",
    "ReconciliationCaseDocument",
    "FailedJob",
    "DOCUMENT_MODELS",
]
