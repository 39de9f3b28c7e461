"""
API routes for payment routing, wallet accounts and provider webhooks.
"""
import hmac
import time
from dataclasses import asdict
from typing import Any, Dict, Optional
from uuid import UUID

import redis.asyncio as aioredis
import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy.ext.asyncio import AsyncSession

from payment_routing.config import get_settings
from payment_routing.core.external_transactions import ExternalTransactionService
from payment_routing.core.idempotency import (
    IdempotencyConflictError,
    IdempotencyManager,
    intent_to_dict,
)
from payment_routing.core.ledger import (
    AccountExistsError,
    AccountNotFoundError,
    CurrencyMismatchError,
    DuplicateReferenceError,
    InsufficientFundsError,
    InvalidAmountError,
    InvalidTransferError,
    LedgerResult,
    LedgerService,
)
from payment_routing.core.payment_intents import (
    PaymentIntentNotFoundError,
    PaymentIntentService,
    PaymentIntentStateError,
    PaymentIntentValidationError,
    ProviderUnavailableError,
)
from payment_routing.core.router import NoEligibleProviderError
from payment_routing.core.routing_analytics import RoutingAnalytics
from payment_routing.database.connection import get_db
from payment_routing.database.models import Account, LedgerEntry
from payment_routing.integrations.signatures import (
    WebhookError,
    WebhookNotConfiguredError,
    WebhookSignatureError,
)
from payment_routing.integrations.webhook_handler import PROVIDERS, WebhookHandler
from payment_routing.monitoring.health import HealthCheck
from payment_routing.providers.registry import ProviderRegistry, build_default_registry

from .schemas import (
    AccountResponse,
    CreateAccountRequest,
    CreatePaymentIntentRequest,
    HealthCheckResponse,
    LedgerMovementResponse,
    LedgerResponse,
    PaymentIntentResponse,
    RefundRequest,
    RefundResponse,
    RoutingDecisionResponse,
    RoutingQuoteRequest,
    TransferRequest,
    TransferResponse,
    WalletMovementRequest,
    WebhookResponse,
)

logger = structlog.get_logger(__name__)

settings = get_settings()

# Create routers
payment_intent_router = APIRouter(prefix="/payment-intents", tags=["payment-intents"])
routing_router = APIRouter(prefix="/routing", tags=["routing"])
account_router = APIRouter(prefix="/accounts", tags=["accounts"])
transfer_router = APIRouter(prefix="/transfers", tags=["transfers"])
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])
monitoring_router = APIRouter(tags=["monitoring"])

# Services, replaced as a set by configure_services()
provider_registry: ProviderRegistry
ledger_service: LedgerService
idempotency_manager: IdempotencyManager
payment_intent_service: PaymentIntentService
webhook_handler: WebhookHandler
health_check: HealthCheck
routing_analytics = RoutingAnalytics()


def configure_services(
    registry: ProviderRegistry, redis_client: Optional[aioredis.Redis] = None
) -> None:
    """Build the service graph around a provider registry."""
    global provider_registry, ledger_service, idempotency_manager
    global payment_intent_service, webhook_handler, health_check

    provider_registry = registry
    ledger_service = LedgerService()
    idempotency_manager = IdempotencyManager(redis_client=redis_client)
    payment_intent_service = PaymentIntentService(
        registry, idempotency_manager=idempotency_manager, ledger=ledger_service
    )
    webhook_handler = WebhookHandler(
        payment_intent_service,
        ExternalTransactionService(ledger=ledger_service),
        redis_client=redis_client,
    )
    health_check = HealthCheck(redis_client=redis_client)


async def shutdown_services() -> None:
    await webhook_handler.close()
    await idempotency_manager.close()
    await provider_registry.close()


configure_services(build_default_registry(settings))


def _account_to_dict(account: Account) -> Dict[str, Any]:
    return {
        "id": str(account.id),
        "user_id": account.user_id,
        "currency": account.currency,
        "account_type": account.account_type,
        "balance_minor": account.balance_minor,
        "created_at": account.created_at.isoformat(),
        "updated_at": account.updated_at.isoformat(),
    }


def _entry_to_dict(entry: LedgerEntry) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "account_id": str(entry.account_id),
        "entry_type": entry.entry_type,
        "amount_minor": entry.amount_minor,
        "balance_after_minor": entry.balance_after_minor,
        "description": entry.description,
        "reference_id": entry.reference_id,
        "created_at": entry.created_at.isoformat(),
    }


async def require_admin_key(request: Request) -> None:
    """Guard admin routes with the configured API key; open when none is set."""
    settings = get_settings()
    expected = settings.admin_api_key
    if not expected:
        return
    provided = request.headers.get(settings.api_key_header, "")
    if not hmac.compare_digest(provided, expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API key")


@payment_intent_router.post(
    "",
    response_model=PaymentIntentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a payment intent",
    description="Route a payment to the best provider and open it there, idempotently",
)
async def create_payment_intent(
    request: CreatePaymentIntentRequest,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """
    Create a payment intent.

    Repeating a request with the same ``Idempotency-Key`` returns the
    original intent. Keys are scoped to the user; reusing one for a
    different amount, currency or account answers 409.
    """
    logger.info(
        "api_create_payment_intent_request",
        user_id=request.user_id,
        amount_minor=request.amount_minor,
        currency=request.currency,
        country=request.country,
    )

    try:
        return await payment_intent_service.create_payment_intent(
            db,
            user_id=request.user_id,
            amount_minor=request.amount_minor,
            currency=request.currency,
            account_id=request.account_id,
            country=request.country,
            payment_method=request.payment_method,
            idempotency_key=idempotency_key,
            preferred_provider=request.preferred_provider,
            customer_email=request.customer_email,
            description=request.description,
            return_url=request.return_url,
            metadata=request.metadata,
        )

    except PaymentIntentValidationError as e:
        logger.warning("api_create_payment_intent_validation_error", error=str(e))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    except IdempotencyConflictError as e:
        logger.warning("api_create_payment_intent_key_conflict", error=str(e))
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    except AccountNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    except NoEligibleProviderError as e:
        logger.warning("api_create_payment_intent_unroutable", error=str(e))
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))

    except ProviderUnavailableError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))


@payment_intent_router.get(
    "/{intent_id}",
    response_model=PaymentIntentResponse,
    summary="Get a payment intent",
)
async def get_payment_intent(intent_id: UUID, db: AsyncSession = Depends(get_db)) -> Dict[str, Any]:
    try:
        intent = await payment_intent_service.get_payment_intent(db, intent_id)
    except PaymentIntentNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return intent_to_dict(intent)


@payment_intent_router.post(
    "/{intent_id}/refresh",
    response_model=PaymentIntentResponse,
    summary="Refresh from provider",
    description="Poll the provider and settle the intent with its current status",
)
async def refresh_payment_intent(
    intent_id: UUID, db: AsyncSession = Depends(get_db)
) -> Dict[str, Any]:
    try:
        intent = await payment_intent_service.refresh_payment_intent(db, intent_id)
    except PaymentIntentNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except ProviderUnavailableError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    return intent_to_dict(intent)


@payment_intent_router.post(
    "/{intent_id}/refund",
    response_model=RefundResponse,
    summary="Refund a payment intent",
    description="Full or partial refund; the wallet is debited first",
)
async def refund_payment_intent(
    intent_id: UUID,
    request: RefundRequest,
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    logger.info(
        "api_refund_payment_intent_request",
        payment_intent_id=str(intent_id),
        amount_minor=request.amount_minor,
    )
    try:
        return await payment_intent_service.refund_payment_intent(
            db, intent_id, amount_minor=request.amount_minor
        )
    except PaymentIntentNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except PaymentIntentValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except (PaymentIntentStateError, InsufficientFundsError) as e:
        logger.warning("api_refund_payment_intent_conflict", error=str(e))
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except ProviderUnavailableError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))


@routing_router.post(
    "/quote",
    response_model=RoutingDecisionResponse,
    summary="Routing quote",
    description="Which provider would take this payment, and why; no side effects",
)
async def routing_quote(request: RoutingQuoteRequest) -> Dict[str, Any]:
    try:
        decision = payment_intent_service.quote(
            currency=request.currency,
            amount_minor=request.amount_minor,
            country=request.country,
            payment_method=request.payment_method,
            preferred_provider=request.preferred_provider,
        )
    except PaymentIntentValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except NoEligibleProviderError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    return decision.to_dict()


@account_router.post(
    "",
    response_model=AccountResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Open a wallet account",
)
async def create_account(
    request: CreateAccountRequest, db: AsyncSession = Depends(get_db)
) -> Dict[str, Any]:
    try:
        account = await ledger_service.create_account(
            db, user_id=request.user_id, currency=request.currency, account_type=request.account_type
        )
    except AccountExistsError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    await db.commit()
    return _account_to_dict(account)


@account_router.get("/{account_id}", response_model=AccountResponse, summary="Get an account")
async def get_account(account_id: UUID, db: AsyncSession = Depends(get_db)) -> Dict[str, Any]:
    try:
        account = await ledger_service.get_account(db, account_id)
    except AccountNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return _account_to_dict(account)


@account_router.get(
    "/{account_id}/ledger",
    response_model=LedgerResponse,
    summary="Ledger entries",
    description="Most recent entries first",
)
async def get_account_ledger(
    account_id: UUID,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    try:
        entries = await ledger_service.list_entries(db, account_id, limit=limit, offset=offset)
    except AccountNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return {
        "account_id": str(account_id),
        "entries": [_entry_to_dict(entry) for entry in entries],
        "limit": limit,
        "offset": offset,
    }


def _movement_to_dict(result: LedgerResult) -> Dict[str, Any]:
    movement = asdict(result)
    movement["account_id"] = str(result.account_id)
    return movement


async def _wallet_movement(
    db: AsyncSession, account_id: UUID, request: WalletMovementRequest, kind: str
) -> Dict[str, Any]:
    log = logger.bind(
        account_id=str(account_id), kind=kind, reference_id=request.reference_id
    )
    try:
        account = await ledger_service.get_account(db, account_id)
        if request.user_id is not None and request.user_id != account.user_id:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN, detail="Account belongs to another user"
            )
        # Client references are only unique per account and movement kind
        reference_id = f"wallet:{account_id}:{kind}:{request.reference_id}"
        if kind == "debit":
            result = await ledger_service.debit_account(
                db,
                account_id,
                request.amount_minor,
                request.currency,
                description=request.description,
                reference_id=reference_id,
            )
        else:
            result = await ledger_service.credit_account(
                db,
                account_id,
                request.amount_minor,
                request.currency,
                description=request.description,
                reference_id=reference_id,
            )
    except AccountNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except (CurrencyMismatchError, InvalidAmountError) as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except (InsufficientFundsError, DuplicateReferenceError) as e:
        log.warning("api_wallet_movement_conflict", error=str(e))
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    await db.commit()
    log.info(
        "api_wallet_movement_applied",
        duplicate=result.duplicate,
        balance_after_minor=result.balance_after_minor,
    )
    return _movement_to_dict(result)


@account_router.post(
    "/{account_id}/debit",
    response_model=LedgerMovementResponse,
    summary="Debit a wallet",
    description="Applied at most once per reference_id; a repeat returns the first entry",
)
async def debit_account(
    account_id: UUID, request: WalletMovementRequest, db: AsyncSession = Depends(get_db)
) -> Dict[str, Any]:
    return await _wallet_movement(db, account_id, request, "debit")


@account_router.post(
    "/{account_id}/refund",
    response_model=LedgerMovementResponse,
    summary="Credit a wallet back",
    description="Returns funds from an earlier debit; applied at most once per reference_id",
)
async def refund_account(
    account_id: UUID, request: WalletMovementRequest, db: AsyncSession = Depends(get_db)
) -> Dict[str, Any]:
    return await _wallet_movement(db, account_id, request, "refund")


@transfer_router.post(
    "",
    response_model=TransferResponse,
    summary="Transfer between wallets",
    description="Both accounts are locked in id order; applied at most once per reference_id",
)
async def create_transfer(
    request: TransferRequest, db: AsyncSession = Depends(get_db)
) -> Dict[str, Any]:
    logger.info(
        "api_transfer_request",
        from_account_id=str(request.from_account_id),
        to_account_id=str(request.to_account_id),
        amount_minor=request.amount_minor,
    )
    try:
        result = await ledger_service.transfer(
            db,
            request.from_account_id,
            request.to_account_id,
            request.amount_minor,
            request.currency,
            reference_id=f"transfer:{request.from_account_id}:{request.reference_id}",
            description=request.description,
        )
    except AccountNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except (CurrencyMismatchError, InvalidAmountError, InvalidTransferError) as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except (InsufficientFundsError, DuplicateReferenceError) as e:
        logger.warning("api_transfer_conflict", error=str(e))
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    await db.commit()
    return {
        "reference_id": result.reference_id,
        "debit": _movement_to_dict(result.debit),
        "credit": _movement_to_dict(result.credit),
        "duplicate": result.duplicate,
    }


@webhook_router.post(
    "/{provider}",
    response_model=WebhookResponse,
    summary="Provider webhook endpoint",
    description="Stripe, Paystack, Flutterwave and Reloadly callbacks",
)
async def provider_webhook(
    provider: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """
    Handle a provider webhook.

    Verifies the signature on the raw body, then processes the event once.
    A processing failure answers 500 so the provider redelivers.
    """
    if provider not in PROVIDERS:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown provider")

    body = await request.body()

    try:
        event = webhook_handler.construct_event(provider, body, request.headers)
    except WebhookNotConfiguredError as e:
        logger.error("api_webhook_not_configured", provider=provider)
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    except WebhookSignatureError as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(e))
    except WebhookError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    logger.info(
        "api_webhook_received",
        provider=provider,
        event_id=event.event_id,
        event_type=event.event_type,
    )

    try:
        return await webhook_handler.process_event(event, db)
    except WebhookError as e:
        logger.error("api_webhook_error", provider=provider, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed",
        )


@admin_router.get(
    "/providers",
    summary="Registered providers",
    description="Capabilities of every provider in routing order",
    dependencies=[Depends(require_admin_key)],
)
async def list_providers() -> Dict[str, Any]:
    return {"providers": [provider.capabilities.to_dict() for provider in provider_registry]}


@admin_router.get(
    "/routing/analytics",
    summary="Routing analytics",
    description="Per-provider success and error rates from stored payment intents",
    dependencies=[Depends(require_admin_key)],
)
async def get_routing_analytics(db: AsyncSession = Depends(get_db)) -> Dict[str, Any]:
    started = time.perf_counter()
    report = await routing_analytics.report(db, providers=provider_registry.names())
    logger.info("api_routing_analytics", duration_seconds=time.perf_counter() - started)
    return report


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health() -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    try:
        return await health_check.check_all()
    except Exception as e:
        logger.error("health_check_error", error=str(e))
        return {
            "status": "unhealthy",
            "checks": {"error": str(e)},
        }


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
    description="Kubernetes liveness probe endpoint",
)
async def liveness() -> Dict[str, Any]:
    return await health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
    description="Kubernetes readiness probe endpoint",
)
async def readiness() -> Dict[str, Any]:
    """Readiness probe endpoint."""
    try:
        result = await health_check.readiness()
    except Exception as e:
        logger.error("readiness_check_error", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"status": "unhealthy", "error": str(e)},
        )
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
