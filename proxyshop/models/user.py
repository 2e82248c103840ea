from datetime import datetime

from beanie import Document, Indexed
from pydantic import Field


class UserDocument(Document):
    email: Indexed(str, unique=True)
    password_hash: str | None = None
    balance_cents: int = 0  # never negative; written only by the ledger unit of work
    is_active: bool = True
    last_login_at: datetime | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "users"
