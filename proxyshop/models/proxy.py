from datetime import datetime

from beanie import Document, PydanticObjectId
from pydantic import Field

from proxyshop.domain import ProxyStatus


class ProxyDocument(Document):
    order_id: PydanticObjectId
    user_id: PydanticObjectId
    ip: str
    port: int
    username: str
    password: str
    country: str
    state: str | None = None
    city: str | None = None
    session_type: str = "sticky"
    proxy_type: str = "residential"
    protocol: str = "http"
    expires_at: datetime
    traffic_left: int = 0
    status: ProxyStatus = "active"
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "proxies"
        indexes = [
            [("user_id", 1), ("status", 1)],
            [("order_id", 1)],
            [("expires_at", 1)],
        ]
