"""
Webhook signature checks for every provider that calls us back.

All comparisons are constant-time. Each function raises
:class:`WebhookSignatureError` instead of returning False so a caller cannot
forget to check the result.
"""
import hashlib
import hmac
import time
from typing import Any, Dict, Optional

import stripe


class WebhookError(Exception):
    """Raised when webhook processing fails."""

    pass


class WebhookSignatureError(WebhookError):
    """Raised when a webhook signature or timestamp does not verify."""

    pass


class WebhookNotConfiguredError(WebhookError):
    """Raised when a webhook arrives for a provider without a configured secret."""

    pass


def _require_secret(provider: str, secret: Optional[str]) -> str:
    if not secret:
        raise WebhookNotConfiguredError(f"{provider} webhook secret is not configured")
    return secret


def hmac_hex(secret: str, payload: bytes, digestmod: Any = hashlib.sha256) -> str:
    return hmac.new(secret.encode(), payload, digestmod).hexdigest()


def verify_hmac_signature(
    payload: bytes,
    signature: Optional[str],
    secret: str,
    digestmod: Any = hashlib.sha256,
    prefix: str = "",
) -> None:
    """
    Generic HMAC hex signature check.

    Args:
        payload: Raw request body
        signature: Header value, optionally carrying ``prefix`` (e.g. ``sha256=``)
        secret: Shared secret
        digestmod: Hash constructor
        prefix: Prefix to strip from the header value

    Raises:
        WebhookSignatureError: If the signature is missing or wrong
    """
    if not signature:
        raise WebhookSignatureError("Missing webhook signature")
    if prefix and signature.startswith(prefix):
        signature = signature[len(prefix):]
    expected = hmac_hex(secret, payload, digestmod)
    if not hmac.compare_digest(expected, signature.strip().lower()):
        raise WebhookSignatureError("Invalid webhook signature")


def verify_stripe_signature(
    payload: bytes, sig_header: Optional[str], secret: Optional[str], tolerance: int = 300
) -> None:
    """Verify a ``Stripe-Signature`` header with the SDK."""
    secret = _require_secret("stripe", secret)
    if not sig_header:
        raise WebhookSignatureError("Missing Stripe-Signature header")
    try:
        body = payload.decode("utf-8")
    except UnicodeDecodeError as e:
        raise WebhookSignatureError("Webhook body is not valid UTF-8") from e
    try:
        stripe.WebhookSignature.verify_header(body, sig_header, secret, tolerance=tolerance)
    except stripe.SignatureVerificationError as e:
        raise WebhookSignatureError(f"Invalid webhook signature: {e}") from e


def verify_paystack_signature(
    payload: bytes, signature: Optional[str], secret_key: Optional[str]
) -> None:
    """Paystack signs the raw body with HMAC-SHA512 of the secret key (``x-paystack-signature``)."""
    secret_key = _require_secret("paystack", secret_key)
    verify_hmac_signature(payload, signature, secret_key, digestmod=hashlib.sha512)


def verify_flutterwave_hash(verif_hash: Optional[str], secret_hash: Optional[str]) -> None:
    """Flutterwave echoes the dashboard secret hash in ``verif-hash``."""
    secret_hash = _require_secret("flutterwave", secret_hash)
    if not verif_hash or not hmac.compare_digest(verif_hash, secret_hash):
        raise WebhookSignatureError("Invalid verif-hash header")


def verify_reloadly_signature(
    payload: bytes,
    signature: Optional[str],
    secret: Optional[str],
    timestamp: Optional[str] = None,
    tolerance: int = 300,
    now: Optional[float] = None,
) -> None:
    """
    Reloadly HMAC-SHA256 check.

    With an ``x-reloadly-timestamp`` header the signed message is
    ``timestamp + body`` and the timestamp must be within ``tolerance``
    seconds; without one the body alone is signed.
    """
    secret = _require_secret("reloadly", secret)
    if timestamp is None:
        verify_hmac_signature(payload, signature, secret)
        return

    verify_hmac_signature(timestamp.encode() + payload, signature, secret)
    try:
        sent_at = int(timestamp)
    except ValueError as e:
        raise WebhookSignatureError("Malformed webhook timestamp") from e
    current = time.time() if now is None else now
    if abs(current - sent_at) > tolerance:
        raise WebhookSignatureError("Webhook timestamp outside tolerance")


def stripe_signature_header(payload: bytes, secret: str, timestamp: Optional[int] = None) -> str:
    """Build a ``Stripe-Signature`` value the way Stripe does (used by tests and tooling)."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.".encode() + payload
    return f"t={timestamp},v1={hmac_hex(secret, signed)}"


def signature_headers(provider: str, payload: bytes, secret: str) -> Dict[str, str]:
    """Headers that make ``payload`` verify for ``provider``; for replay tooling and tests."""
    if provider == "stripe":
        return {"Stripe-Signature": stripe_signature_header(payload, secret)}
    if provider == "paystack":
        return {"x-paystack-signature": hmac_hex(secret, payload, hashlib.sha512)}
    if provider == "flutterwave":
        return {"verif-hash": secret}
    if provider == "reloadly":
        timestamp = str(int(time.time()))
        return {
            "x-reloadly-signature": hmac_hex(secret, timestamp.encode() + payload),
            "x-reloadly-timestamp": timestamp,
        }
    raise ValueError(f"Unknown webhook provider: {provider}")
