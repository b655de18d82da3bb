# FILE: creditledger/api/deps.py

import base64
import hashlib
import hmac
import logging

import jwt
from fastapi import Depends, Header, HTTPException, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from creditledger.core.config import INTERNAL_API_TOKEN, JWT_ALGORITHM, JWT_SECRET, WEBHOOK_SECRET
from creditledger.core.errors import InvalidAdjustment
from creditledger.services.credit_store import normalize_shop_domain
from creditledger.services.ledger import CreditLedgerService, get_ledger

logger = logging.getLogger("creditledger.auth")

security = HTTPBearer(auto_error=False)


async def get_current_account(
        credentials: HTTPAuthorizationCredentials = Depends(security),
) -> str:
    """Merchant session: the account id is the token's shop claim."""
    if not credentials or not credentials.credentials:
        raise HTTPException(status_code=401, detail="Not authenticated")

    try:
        payload = jwt.decode(
            credentials.credentials.strip(),
            JWT_SECRET,
            algorithms=[JWT_ALGORITHM],
        )
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")

    shop = payload.get("shop") or payload.get("sub")
    if not shop or not isinstance(shop, str):
        raise HTTPException(status_code=401, detail="Invalid token payload")
    try:
        return normalize_shop_domain(shop)
    except InvalidAdjustment:
        raise HTTPException(status_code=401, detail="Invalid token payload")


async def require_internal_token(x_internal_token: str = Header(default="")) -> None:
    """Generation subsystem and admin tooling share one static token."""
    if not INTERNAL_API_TOKEN:
        raise HTTPException(status_code=503, detail="Internal API token not configured")
    if not hmac.compare_digest(x_internal_token.encode("utf-8"), INTERNAL_API_TOKEN.encode("utf-8")):
        raise HTTPException(status_code=401, detail="Invalid internal token")


def sign_webhook_body(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("utf-8")


async def verify_webhook_signature(request: Request) -> bytes:
    """Base64 HMAC-SHA256 of the raw body in X-Webhook-Hmac-Sha256."""
    if not WEBHOOK_SECRET:
        raise HTTPException(status_code=503, detail="Webhook secret not configured")
    body = await request.body()
    received = request.headers.get("x-webhook-hmac-sha256", "")
    if not received or not hmac.compare_digest(sign_webhook_body(body).encode("utf-8"), received.encode("utf-8")):
        logger.warning("Rejected billing webhook %s: bad signature", request.url.path)
        raise HTTPException(status_code=401, detail="Invalid webhook signature")
    return body


def ledger_dependency() -> CreditLedgerService:
    return get_ledger()
