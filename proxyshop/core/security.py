import base64
import hashlib
import hmac
from typing import Any

from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from proxyshop.core.config import get_settings

SESSION_MAX_AGE_SECONDS = 7 * 24 * 3600


def get_session_serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(
        settings.secret_key,
        salt="proxyshop-session",
        signer_kwargs={"key_derivation": "hmac", "digest_method": hashlib.sha256},
    )


def create_session_cookie(payload: dict[str, Any]) -> str:
    return get_session_serializer().dumps(payload)


def load_session_cookie(cookie_value: str) -> dict[str, Any] | None:
    try:
        return get_session_serializer().loads(cookie_value, max_age=SESSION_MAX_AGE_SECONDS)
    except (BadSignature, SignatureExpired):
        return None


def sign_payment_payload(body: bytes, api_key: str) -> str:
    """Cryptomus signature: md5(base64(json body) + api key), hex encoded."""
    encoded = base64.b64encode(body)
    return hashlib.md5(encoded + api_key.encode("utf-8")).hexdigest()


def verify_payment_webhook(body: bytes, signature: str | None, api_key: str) -> bool:
    if not signature or not api_key:
        return False
    expected = sign_payment_payload(body, api_key)
    return hmac.compare_digest(expected, signature.strip().lower())
