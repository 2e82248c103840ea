import certifi
from beanie import init_beanie
from motor.motor_asyncio import AsyncIOMotorClient

from proxyshop.core.config import get_settings
from proxyshop.models import DOCUMENT_MODELS

_client: AsyncIOMotorClient | None = None


def _use_tls(uri: str) -> bool:
    """True if URI uses TLS (Atlas or explicit tls=true). Avoids TLS for plain mongodb:// in CI."""
    return "mongodb+srv://" in uri or "tls=true" in uri.lower()


def get_client() -> AsyncIOMotorClient:
    """Process-wide Motor client; sessions for ledger transactions are opened from it."""
    global _client
    if _client is None:
        settings = get_settings()
        kwargs = {}
        if _use_tls(settings.mongodb_uri):
            kwargs["tlsCAFile"] = certifi.where()
            kwargs["tlsDisableOCSPEndpointCheck"] = True
        _client = AsyncIOMotorClient(settings.mongodb_uri, **kwargs)
    return _client


async def init_db() -> None:
    settings = get_settings()
    database = get_client()[settings.mongodb_db_name]
    await init_beanie(database=database, document_models=DOCUMENT_MODELS)
