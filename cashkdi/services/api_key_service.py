"""
API Key Service

Issues and authenticates merchant API keys and gates requests on a
per-key rate limit.

Token format handed to merchants (shown once): "{key_id}.{secret}"
- key_id: ck_test_ / ck_live_ + 32 lowercase alphanumerics, stored in clear
- secret: stored only as HMAC-SHA256(pepper, secret)
"""
import hashlib
import hmac
import logging
import secrets
import string
from datetime import datetime
from typing import Iterable, List, Optional, Tuple

from limits import RateLimitItemPerSecond
from limits.storage import MemoryStorage, Storage
from limits.strategies import FixedWindowRateLimiter
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import Settings
from ..db.models import ApiKeyModel
from ..exceptions import AuthenticationError, PermissionDeniedError, RateLimitExceededError
from ..models.status import ApiKeyEnvironment
from ..utils import utcnow

logger = logging.getLogger(__name__)

SCOPE_PAYMENTS_CREATE = "payments:create"
SCOPE_PAYMENTS_READ = "payments:read"
SCOPE_PAYMENTS_CANCEL = "payments:cancel"
SCOPE_WEBHOOKS_RECEIVE = "webhooks:receive"
SCOPE_ADMIN_READ = "admin:read"
SCOPE_ADMIN_WRITE = "admin:write"

ALL_SCOPES: Tuple[str, ...] = (
    SCOPE_PAYMENTS_CREATE,
    SCOPE_PAYMENTS_READ,
    SCOPE_PAYMENTS_CANCEL,
    SCOPE_WEBHOOKS_RECEIVE,
    SCOPE_ADMIN_READ,
    SCOPE_ADMIN_WRITE,
)

KEY_PREFIXES = {
    ApiKeyEnvironment.SANDBOX.value: "ck_test_",
    ApiKeyEnvironment.PRODUCTION.value: "ck_live_",
}

_KEY_ALPHABET = string.ascii_lowercase + string.digits


# ============================================================================
# Rate limiting
# ============================================================================

class ApiKeyRateLimiter:
    """
    Fixed-window request limit per API key, backed by the limits library.

    The default MemoryStorage is process-local; pass a shared storage
    (for example limits.storage.RedisStorage) for multi-process deployments.
    """

    def __init__(self, window_seconds: int, storage: Optional[Storage] = None):
        self.window_seconds = window_seconds
        self.storage = storage or MemoryStorage()
        self._limiter = FixedWindowRateLimiter(self.storage)

    def _item(self, limit: int) -> RateLimitItemPerSecond:
        return RateLimitItemPerSecond(limit, self.window_seconds)

    def hit(self, key: str, limit: int) -> bool:
        """Count one request; False when the key is over its limit."""
        return self._limiter.hit(self._item(limit), key)

    def check(self, key: str, limit: int) -> None:
        if not self.hit(key, limit):
            raise RateLimitExceededError(key, limit)

    def clear(self, key: str, limit: int) -> None:
        self._limiter.clear(self._item(limit), key)

    def reset(self) -> None:
        """Forget every window."""
        self.storage.reset()


# ============================================================================
# API keys
# ============================================================================

class ApiKeyService:
    def __init__(self, session: AsyncSession, settings: Settings):
        self.session = session
        self.settings = settings

    def hash_secret(self, secret: str) -> str:
        return hmac.new(
            self.settings.api_key_pepper.encode("utf-8"),
            secret.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

    async def generate(
        self,
        name: str,
        scopes: Iterable[str],
        environment: str = ApiKeyEnvironment.SANDBOX.value,
        rate_limit: Optional[int] = None,
        expires_at: Optional[datetime] = None,
    ) -> Tuple[ApiKeyModel, str]:
        """
        Create an API key.

        Returns:
            (stored key, plaintext token); the token cannot be recovered later
        """
        scopes = list(dict.fromkeys(scopes))
        unknown = [scope for scope in scopes if scope not in ALL_SCOPES]
        if unknown:
            raise ValueError(f"Unknown scopes: {', '.join(unknown)}")
        environment = ApiKeyEnvironment(environment).value

        key_id = KEY_PREFIXES[environment] + "".join(secrets.choice(_KEY_ALPHABET) for _ in range(32))
        secret = secrets.token_urlsafe(32)
        api_key = ApiKeyModel(
            name=name,
            key_id=key_id,
            secret_hash=self.hash_secret(secret),
            environment=environment,
            scopes=scopes,
            rate_limit=rate_limit or self.settings.rate_limit,
            expires_at=expires_at,
            created_at=utcnow(),
        )
        self.session.add(api_key)
        await self.session.commit()
        logger.info(f"Issued API key {key_id} ({environment}) scopes={scopes}")
        return api_key, f"{key_id}.{secret}"

    async def authenticate(self, token: Optional[str], now: Optional[datetime] = None) -> ApiKeyModel:
        """
        Resolve a bearer token to an active key.

        Raises:
            AuthenticationError: malformed, unknown, expired or revoked
        """
        if not token or "." not in token:
            raise AuthenticationError()
        key_id, secret = token.strip().split(".", 1)

        result = await self.session.execute(select(ApiKeyModel).where(ApiKeyModel.key_id == key_id))
        api_key = result.scalar_one_or_none()
        if api_key is None:
            raise AuthenticationError()
        if not hmac.compare_digest(api_key.secret_hash, self.hash_secret(secret)):
            logger.warning(f"Bad secret presented for API key {key_id}")
            raise AuthenticationError()

        now = now or utcnow()
        if api_key.revoked_at is not None:
            raise AuthenticationError("API key has been revoked")
        if api_key.expires_at is not None and api_key.expires_at <= now:
            raise AuthenticationError("API key has expired")
        return api_key

    @staticmethod
    def require_scope(api_key: ApiKeyModel, scope: str) -> None:
        if scope not in (api_key.scopes or []):
            raise PermissionDeniedError(scope)

    async def record_usage(self, api_key: ApiKeyModel, now: Optional[datetime] = None) -> None:
        api_key.last_used_at = now or utcnow()
        await self.session.commit()

    async def revoke(self, api_key: ApiKeyModel, now: Optional[datetime] = None) -> None:
        api_key.revoked_at = now or utcnow()
        await self.session.commit()
        logger.info(f"Revoked API key {api_key.key_id}")

    async def list_keys(self) -> List[ApiKeyModel]:
        result = await self.session.execute(select(ApiKeyModel).order_by(ApiKeyModel.created_at.desc()))
        return list(result.scalars().all())
