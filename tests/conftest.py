import os
from decimal import Decimal
from typing import AsyncGenerator, Callable

import httpx
import pytest
import pytest_asyncio

# In-memory persistence; no MongoDB or Redis needed.
os.environ["STORE_BACKEND"] = "memory"
os.environ.setdefault("SECRET_KEY", "test-secret-key-min-32-characters-long")
os.environ.setdefault("CRYPTOMUS_MERCHANT_ID", "merchant-test")
os.environ.setdefault("CRYPTOMUS_API_KEY", "cryptomus-test-key")

from proxyshop.core.catalog import ProxyCatalog  # noqa: E402
from proxyshop.domain import Account  # noqa: E402
from proxyshop.services.ledger import LedgerService  # noqa: E402
from proxyshop.services.provisioning import ProvisioningClient  # noqa: E402
from proxyshop.stores.memory import MemoryStore  # noqa: E402

PROVIDER_URL = "http://provider.test"


def proxy_lines(count: int, start: int = 1) -> str:
    return "\r\n".join(f"10.0.0.{i}:8000:u{i}:p{i}" for i in range(start, start + count))


@pytest.fixture
def catalog() -> ProxyCatalog:
    return ProxyCatalog()


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def ledger(store: MemoryStore) -> LedgerService:
    return LedgerService(store)


@pytest_asyncio.fixture
async def make_user(store: MemoryStore, ledger: LedgerService) -> Callable:
    counter = {"n": 0}

    async def _make(balance: str = "0") -> Account:
        counter["n"] += 1
        account = await store.users.create(f"user{counter['n']}@example.com")
        if Decimal(balance) > 0:
            await ledger.apply_ledger_mutation(account.id, Decimal(balance), "topup", "Test funding")
        return await store.users.get(account.id)

    return _make


@pytest.fixture
def provider_calls() -> list[httpx.Request]:
    return []


@pytest.fixture
def make_provider(catalog: ProxyCatalog, provider_calls: list) -> Callable[..., ProvisioningClient]:
    """Build a ProvisioningClient whose HTTP calls are answered by ``handler``."""

    def _make(handler: Callable[[httpx.Request], httpx.Response]) -> ProvisioningClient:
        def recording(request: httpx.Request) -> httpx.Response:
            provider_calls.append(request)
            return handler(request)

        http_client = httpx.AsyncClient(transport=httpx.MockTransport(recording))
        return ProvisioningClient(catalog, base_url=PROVIDER_URL, timeout_seconds=5, http_client=http_client)

    return _make


@pytest.fixture
def echo_provider(make_provider) -> ProvisioningClient:
    """Provider that returns exactly ``count`` well-formed proxies."""

    def handler(request: httpx.Request) -> httpx.Response:
        count = int(request.url.params["count"])
        return httpx.Response(200, text=proxy_lines(count))

    return make_provider(handler)


@pytest_asyncio.fixture
async def client() -> AsyncGenerator[httpx.AsyncClient, None]:
    from proxyshop.main import app
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
    app.dependency_overrides.clear()
