# FILE: creditledger/services/auth_service.py
import jwt
from datetime import datetime, timezone, timedelta

from creditledger.core.config import JWT_SECRET, JWT_ALGORITHM, JWT_EXPIRATION_HOURS
from creditledger.services.credit_store import normalize_shop_domain


def create_token(shop: str) -> str:
    """Session token for the merchant dashboard, one per shop."""
    shop = normalize_shop_domain(shop)
    payload = {
        "shop": shop,
        "sub": shop,
        "exp": datetime.now(timezone.utc) + timedelta(hours=JWT_EXPIRATION_HOURS),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)
