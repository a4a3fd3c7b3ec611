import certifi
from beanie import init_beanie
from motor.motor_asyncio import AsyncIOMotorClient

from marketplace.core.config import get_settings
from marketplace.models.audit_log import AuditLog
from marketplace.models.credit_account import CreditAccount
from marketplace.models.credit_ledger import LedgerEntry
from marketplace.models.failed_job import FailedJob
from marketplace.models.service_request import ServiceRequest
from marketplace.models.user import User

DOCUMENT_MODELS = [
    User,
    CreditAccount,
    LedgerEntry,
    ServiceRequest,
    AuditLog,
    FailedJob,
]


def _use_tls(uri: str) -> bool:
    """True if URI uses TLS (Atlas or explicit tls=true). Avoids TLS for plain mongodb:// in CI."""
    return "mongodb+srv://" in uri or "tls=true" in uri.lower()


async def init_db(client=None) -> None:
    """Bind Beanie documents to the configured database; tests pass an in-memory client."""
    settings = get_settings()
    if client is None:
        # Atlas in Docker: tlsCAFile + tlsDisableOCSPEndpointCheck avoid TLSV1_ALERT_INTERNAL_ERROR
        kwargs = {}
        if _use_tls(settings.mongodb_uri):
            kwargs["tlsCAFile"] = certifi.where()
            kwargs["tlsDisableOCSPEndpointCheck"] = True
        client = AsyncIOMotorClient(settings.mongodb_uri, **kwargs)
    database = client[settings.mongodb_db_name]
    await init_beanie(database=database, document_models=DOCUMENT_MODELS)
