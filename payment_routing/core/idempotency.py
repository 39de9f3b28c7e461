"""
Idempotency for payment intent creation.

Two tiers:
1. Redis cache for fast lookups (when configured)
2. The ``payment_intents.idempotency_key`` unique column as the durable record
"""
import hashlib
import json
from typing import Any, Dict, Optional

import redis.asyncio as aioredis
import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from payment_routing.config import get_settings
from payment_routing.database.models import PaymentIntent
from payment_routing.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

CACHE_PREFIX = "idempotency:"


class IdempotencyError(Exception):
    """Raised when idempotency validation fails."""

    pass


class IdempotencyConflictError(IdempotencyError):
    """Raised when a key is reused for a different request."""

    pass


def scoped_key(user_id: str, client_key: str) -> str:
    """Client keys are only unique per user."""
    return f"{user_id}:{client_key}"


def ensure_same_request(
    response: Dict[str, Any],
    amount_minor: int,
    currency: str,
    account_id: Optional[str],
) -> None:
    """
    Check that an earlier response was created for the same request.

    Raises:
        IdempotencyConflictError: If amount, currency or account differ
    """
    earlier = (response.get("amount_minor"), response.get("currency"), response.get("account_id"))
    if earlier != (amount_minor, currency, account_id):
        raise IdempotencyConflictError(
            "Idempotency key was already used for a different payment request"
        )


def intent_to_dict(intent: PaymentIntent) -> Dict[str, Any]:
    """JSON-safe snapshot of a payment intent, as cached and returned by the API."""
    return {
        "id": str(intent.id),
        "user_id": intent.user_id,
        "account_id": str(intent.account_id) if intent.account_id else None,
        "provider": intent.provider,
        "provider_reference": intent.provider_reference,
        "amount_minor": intent.amount_minor,
        "currency": intent.currency,
        "country": intent.country,
        "payment_method": intent.payment_method,
        "status": intent.status,
        "routing_score": intent.routing_score,
        "client_secret": intent.client_secret,
        "checkout_url": intent.checkout_url,
        "error_message": intent.error_message,
        "idempotency_key": intent.idempotency_key,
        "created_at": intent.created_at.isoformat(),
        "updated_at": intent.updated_at.isoformat(),
    }


class IdempotencyManager:
    """
    Manages idempotency keys and cached responses.

    Redis errors never fail a request: the database lookup always runs
    when the cache cannot answer.
    """

    def __init__(self, redis_client: Optional[aioredis.Redis] = None):
        """
        Initialize idempotency manager.

        Args:
            redis_client: Optional Redis client; one is created from
                ``redis_url`` on first use when omitted
        """
        self.settings = get_settings()
        self.redis_client = redis_client
        self._owns_client = False

    async def _get_redis(self) -> Optional[aioredis.Redis]:
        """Return the injected client, or lazily connect when a URL is configured."""
        if self.redis_client is None and self.settings.redis_url:
            self.redis_client = aioredis.from_url(
                self.settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
            self._owns_client = True
        return self.redis_client

    @staticmethod
    def generate_key(
        user_id: str,
        amount_minor: int,
        currency: str,
        account_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        """
        Derive an idempotency key from the request content.

        Used when the client sends no ``Idempotency-Key`` header, so an
        identical resubmission maps onto the same intent.

        Format: {user_id}:{request_hash}
        """
        request_data = f"{amount_minor}:{currency.upper()}:{account_id or ''}"
        if metadata:
            # Sort metadata keys for consistent hashing
            sorted_metadata = ":".join(f"{k}={v}" for k, v in sorted(metadata.items()))
            request_data += f":{sorted_metadata}"

        request_hash = hashlib.sha256(request_data.encode()).hexdigest()[:32]
        return f"{user_id}:{request_hash}"

    async def check_idempotency(
        self, idempotency_key: str, db: AsyncSession
    ) -> Optional[Dict[str, Any]]:
        """
        Look up an earlier response for this key.

        Args:
            idempotency_key: The idempotency key to check
            db: Database session

        Returns:
            Optional[Dict[str, Any]]: Earlier response if one exists

        Raises:
            IdempotencyError: If the database lookup fails
        """
        try:
            redis = await self._get_redis()
            if redis is not None:
                cached_response = await redis.get(f"{CACHE_PREFIX}{idempotency_key}")
                if cached_response:
                    metrics.record_idempotency_cache_hit("redis")
                    logger.info(
                        "idempotency_cache_hit",
                        idempotency_key=idempotency_key,
                        source="redis",
                    )
                    return json.loads(cached_response)
        except Exception as e:
            logger.warning(
                "redis_cache_error",
                error=str(e),
                idempotency_key=idempotency_key,
            )

        try:
            result = await db.execute(
                select(PaymentIntent).where(PaymentIntent.idempotency_key == idempotency_key)
            )
            intent = result.scalar_one_or_none()
        except Exception as e:
            logger.error(
                "database_idempotency_check_error",
                error=str(e),
                idempotency_key=idempotency_key,
            )
            raise IdempotencyError(f"Failed to check idempotency: {e}") from e

        if intent is not None:
            metrics.record_idempotency_cache_hit("database")
            logger.info(
                "idempotency_cache_hit",
                idempotency_key=idempotency_key,
                source="database",
            )
            response = intent_to_dict(intent)
            await self.store_response(idempotency_key, response)
            return response

        metrics.record_idempotency_cache_hit("miss")
        logger.debug("idempotency_cache_miss", idempotency_key=idempotency_key)
        return None

    async def store_response(self, idempotency_key: str, response: Dict[str, Any]) -> None:
        """Cache a response for later duplicates of the same key."""
        try:
            redis = await self._get_redis()
            if redis is None:
                return
            await redis.setex(
                f"{CACHE_PREFIX}{idempotency_key}",
                self.settings.idempotency_cache_ttl,
                json.dumps(response),
            )
        except Exception as e:
            logger.warning(
                "idempotency_cache_store_error",
                error=str(e),
                idempotency_key=idempotency_key,
            )

    async def invalidate(self, idempotency_key: str) -> None:
        """Drop the cached response, e.g. after the intent's status changed."""
        try:
            redis = await self._get_redis()
            if redis is not None:
                await redis.delete(f"{CACHE_PREFIX}{idempotency_key}")
        except Exception as e:
            logger.warning(
                "idempotency_cache_invalidate_error",
                error=str(e),
                idempotency_key=idempotency_key,
            )

    async def close(self) -> None:
        """Close the Redis connection if this manager opened it."""
        if self.redis_client is not None and self._owns_client:
            await self.redis_client.aclose()
            self.redis_client = None
            self._owns_client = False
