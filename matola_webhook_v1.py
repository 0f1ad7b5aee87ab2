"""
Matola - Webhook Signature Validator
Version: 1.0.0

HMAC-SHA256 authenticity checks for inbound mobile-money callbacks.

Verification fails closed: a missing secret, a missing signature or a
mismatch all yield False, never an exception, so callers can uniformly
answer "not verified" with 401.
"""

import hashlib
import hmac
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from matola_config import MatolaSettings
from matola_enforcement_v1 import (
    Invariant,
    InvariantType,
    Criticality,
    InvariantViolation,
    SignatureMismatch,
    ValidationError,
)
from matola_metrics import record_webhook_verification
from matola_models_v1 import PaymentProvider, PaymentStatus

logger = logging.getLogger("matola.webhook")

Payload = Union[str, bytes]

PROVIDER_SECRET_NAMES: Dict[PaymentProvider, str] = {
    PaymentProvider.AIRTEL_MONEY: "AIRTEL_WEBHOOK_SECRET",
    PaymentProvider.TNM_MPAMBA: "TNM_WEBHOOK_SECRET",
}

# URL slug -> provider
PROVIDER_ALIASES: Dict[str, PaymentProvider] = {
    'airtel': PaymentProvider.AIRTEL_MONEY,
    'airtel_money': PaymentProvider.AIRTEL_MONEY,
    'tnm': PaymentProvider.TNM_MPAMBA,
    'tnm_mpamba': PaymentProvider.TNM_MPAMBA,
}

# Airtel transaction status codes
AIRTEL_STATUS_MAP: Dict[str, PaymentStatus] = {
    'TS': PaymentStatus.CONFIRMED,
    'TF': PaymentStatus.FAILED,
    'TP': PaymentStatus.PENDING,
    'TIP': PaymentStatus.PENDING,
}

# ============================================
# SECRET STORE
# ============================================

class SecretStore(ABC):
    """Named secret lookup. None means the secret is not configured."""

    @abstractmethod
    def get(self, name: str) -> Optional[str]:
        pass


class SettingsSecretStore(SecretStore):
    """Secrets read from MatolaSettings (environment / .env)."""

    def __init__(self, settings: MatolaSettings):
        self.settings = settings

    def get(self, name: str) -> Optional[str]:
        return getattr(self.settings, name, None) or None


class StaticSecretStore(SecretStore):
    def __init__(self, secrets: Optional[Dict[str, str]] = None):
        self.secrets = dict(secrets or {})

    def get(self, name: str) -> Optional[str]:
        return self.secrets.get(name) or None

# ============================================
# SIGNATURES
# ============================================

def _as_bytes(value: Payload) -> bytes:
    return value if isinstance(value, bytes) else value.encode("utf-8")


def generate_signature(payload: Payload, secret: str) -> str:
    """HMAC-SHA256 hex digest of the raw payload."""
    return hmac.new(_as_bytes(secret), _as_bytes(payload), hashlib.sha256).hexdigest()


def verify_provider_webhook(payload: Payload, signature: Optional[str], provider_secret: Optional[str]) -> bool:
    """Check a webhook signature against the provider's secret.

    Returns False when the secret is unset, the signature is missing or the
    recomputed HMAC differs. Comparison is constant-time.
    """
    if not provider_secret or not signature:
        return False
    if payload is None:
        return False

    expected = generate_signature(payload, provider_secret)
    try:
        return hmac.compare_digest(expected, signature.strip().lower())
    except TypeError:
        # non-ASCII signature strings cannot be compared
        return False


def resolve_provider(provider: Union[str, PaymentProvider]) -> PaymentProvider:
    if isinstance(provider, PaymentProvider):
        return provider
    try:
        return PROVIDER_ALIASES.get(provider) or PaymentProvider(provider)
    except ValueError:
        raise ValidationError(f"Unknown payment provider: {provider}", code="UNKNOWN_PROVIDER")


class WebhookVerifier:
    """Verifies provider callbacks with per-provider secrets from a SecretStore."""

    def __init__(self, secret_store: SecretStore):
        self.secret_store = secret_store

    def verify(self, provider: Union[str, PaymentProvider], payload: Payload, signature: Optional[str]) -> bool:
        try:
            provider = resolve_provider(provider)
        except ValidationError:
            logger.warning(f"Webhook from unknown provider {provider!r} rejected")
            record_webhook_verification(str(provider), "rejected")
            return False

        secret_name = PROVIDER_SECRET_NAMES.get(provider)
        secret = self.secret_store.get(secret_name) if secret_name else None
        if not secret:
            logger.warning(f"{provider.value} webhook secret not configured; rejecting callback")
            record_webhook_verification(provider.value, "unconfigured")
            return False

        verified = verify_provider_webhook(payload, signature, secret)
        record_webhook_verification(provider.value, "verified" if verified else "rejected")
        if not verified:
            logger.error(f"Invalid {provider.value} webhook signature")
        return verified

    def require_verified(self, provider: Union[str, PaymentProvider], payload: Payload, signature: Optional[str]):
        if not self.verify(provider, payload, signature):
            raise SignatureMismatch("Invalid signature")

# ============================================
# PROVIDER CALLBACK HELPERS
# ============================================

def webhook_idempotency_key(provider: Union[str, PaymentProvider], transaction_id: str, status: str) -> str:
    """Replay key for a callback: the same transaction and status is processed once."""
    slug = {
        PaymentProvider.AIRTEL_MONEY: "airtel",
        PaymentProvider.TNM_MPAMBA: "tnm",
    }.get(resolve_provider(provider), str(provider))
    return f"{slug}:{transaction_id}:{status}"


def map_provider_status(provider: Union[str, PaymentProvider], code: Any) -> PaymentStatus:
    """Translate a provider status code to a PaymentStatus."""
    provider = resolve_provider(provider)
    if provider == PaymentProvider.AIRTEL_MONEY:
        return AIRTEL_STATUS_MAP.get(str(code).upper(), PaymentStatus.PENDING)
    if provider == PaymentProvider.TNM_MPAMBA:
        # TNM result codes: 0 = success, anything else = failure
        return PaymentStatus.CONFIRMED if str(code) == "0" else PaymentStatus.FAILED
    raise ValidationError(f"{provider.value} does not send webhooks", code="UNKNOWN_PROVIDER")


# Header carrying the HMAC of the raw body
SIGNATURE_HEADERS: Dict[PaymentProvider, str] = {
    PaymentProvider.AIRTEL_MONEY: "x-airtel-signature",
    PaymentProvider.TNM_MPAMBA: "x-tnm-signature",
}


@dataclass(frozen=True)
class ProviderCallback:
    provider: PaymentProvider
    transaction_id: str
    status_code: str
    reference: str


def parse_provider_callback(provider: Union[str, PaymentProvider], body: Dict[str, Any]) -> ProviderCallback:
    """Pull transaction id, status code and our payment reference out of a callback body.

    Airtel: {"transaction": {"id", "status_code"}, "reference"}
    TNM:    {"transactionId", "resultCode", "reference"}
    """
    provider = resolve_provider(provider)
    if not isinstance(body, dict):
        raise ValidationError("Webhook body must be a JSON object", code="INVALID_WEBHOOK_PAYLOAD")

    if provider == PaymentProvider.AIRTEL_MONEY:
        transaction = body.get('transaction') or {}
        transaction_id = transaction.get('id') if isinstance(transaction, dict) else None
        status_code = transaction.get('status_code') if isinstance(transaction, dict) else None
    else:
        transaction_id = body.get('transactionId')
        status_code = body.get('resultCode')
    reference = body.get('reference')

    if not transaction_id or status_code is None or not reference:
        raise ValidationError("Webhook payload missing transaction fields", code="INVALID_WEBHOOK_PAYLOAD")
    return ProviderCallback(provider, str(transaction_id), str(status_code), str(reference))

# ============================================
# INVARIANTS
# ============================================

class WebhookSignatureVerified(Invariant):
    """Inbound callback must carry a valid provider signature."""

    error_class = SignatureMismatch
    code = "INVALID_SIGNATURE"

    def __init__(self):
        super().__init__(
            id="pay_100_webhook_signature",
            statement="Invalid signature",
            type=InvariantType.SECURITY,
            criticality=Criticality.CRITICAL,
            dependencies=[],
            owner="payment_service"
        )

    def pre_check(self, provider=None, payload=None, signature=None, verifier: WebhookVerifier = None, **kwargs) -> bool:
        return verifier.verify(provider, payload, signature)


class WebhookNotReplayed(Invariant):
    """A callback (provider, transaction, status) is processed at most once."""

    error_class = InvariantViolation
    code = "DUPLICATE_WEBHOOK"

    def __init__(self):
        super().__init__(
            id="pay_101_webhook_not_replayed",
            statement="Webhook already processed",
            type=InvariantType.DATA_INTEGRITY,
            criticality=Criticality.IMPORTANT,
            dependencies=["pay_100_webhook_signature"],
            owner="payment_service"
        )

    def pre_check(self, idempotency_key: str = None, repository=None, **kwargs) -> bool:
        return not repository.webhook_processed(idempotency_key)
