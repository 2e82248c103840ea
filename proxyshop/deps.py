"""Shared FastAPI dependencies."""

from fastapi import Depends, Request

from proxyshop.core.catalog import ProxyCatalog, get_catalog
from proxyshop.core.config import get_settings
from proxyshop.core.exceptions import UnauthorizedError
from proxyshop.core.logging import bind_user_id
from proxyshop.core.security import load_session_cookie
from proxyshop.domain import Account
from proxyshop.services.ledger import LedgerService
from proxyshop.services.provisioning import ProvisioningClient
from proxyshop.stores.base import Store, get_store
from proxyshop.workflows import PurchaseWorkflow

SESSION_COOKIE_NAME = "proxyshop_session"


def get_store_dep() -> Store:
    return get_store()


async def get_current_user(request: Request, store: Store = Depends(get_store_dep)) -> Account:
    """Dependency: load session from cookie and return the account."""
    cookie = request.cookies.get(SESSION_COOKIE_NAME)
    if not cookie:
        raise UnauthorizedError("Not authenticated")
    payload = load_session_cookie(cookie)
    if not payload:
        raise UnauthorizedError("Invalid or expired session")
    user_id = payload.get("user_id")
    if not user_id:
        raise UnauthorizedError("Invalid session")
    user = await store.users.get(user_id)
    if not user:
        raise UnauthorizedError("User not found")
    if not user.is_active:
        raise UnauthorizedError("Account disabled")
    bind_user_id(user.id)
    return user


def get_ledger(store: Store = Depends(get_store_dep)) -> LedgerService:
    return LedgerService(store)


def get_provisioning_client(catalog: ProxyCatalog = Depends(get_catalog)) -> ProvisioningClient:
    settings = get_settings()
    return ProvisioningClient(
        catalog,
        base_url=settings.provisioning_base_url,
        timeout_seconds=settings.provisioning_timeout_seconds,
    )


def get_purchase_workflow(
    store: Store = Depends(get_store_dep),
    client: ProvisioningClient = Depends(get_provisioning_client),
    ledger: LedgerService = Depends(get_ledger),
    catalog: ProxyCatalog = Depends(get_catalog),
) -> PurchaseWorkflow:
    return PurchaseWorkflow(store, client, ledger, catalog)
