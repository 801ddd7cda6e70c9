"""
WEBHOOK AUTHENTICATION & EVENT PARSING

Validators check a provider's signature over the RAW request body with a
shared secret, in constant time, and fail closed on anything missing.
Only after a payload is authenticated is it parsed into a typed schema
and mapped onto the ledger vocabulary (completed / failed / ignored).

Signatures:
- Flutterwave: base64 HMAC-SHA256 of the body ("flutterwave-signature"),
  or the legacy "verif-hash" header carrying the secret hash itself
- Monnify: hex HMAC-SHA512 of the body ("monnify-signature")
- Stripe: "Stripe-Signature" t=...,v1=... scheme, verified by the SDK
"""

from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List
import base64
import hashlib
import hmac
import json
import logging

import pydantic
import stripe

from models import (
    PaymentProvider,
    PaymentStatus,
    FlutterwaveWebhookPayload,
    MonnifyWebhookPayload,
    StripeWebhookEvent,
)
from settlement.errors import ValidationError
from settlement.financial_precision import to_minor_units

logger = logging.getLogger(__name__)

STRIPE_TOLERANCE_SECONDS = 300

# Header(s) each provider puts its signature in, in lookup order
SIGNATURE_HEADERS: Dict[str, List[str]] = {
    PaymentProvider.FLUTTERWAVE.value: ["flutterwave-signature", "verif-hash"],
    PaymentProvider.MONNIFY.value: ["monnify-signature"],
    PaymentProvider.STRIPE.value: ["stripe-signature"],
}

OUTCOME_IGNORED = "ignored"


# =============================================================================
# SIGNATURE VALIDATORS
# =============================================================================

class WebhookValidator:
    """validate(signature, raw_payload, secret) -> bool"""

    provider: str = ""

    def validate(self, signature: Optional[str], raw_payload: bytes, secret: Optional[str]) -> bool:
        raise NotImplementedError


class FlutterwaveSignatureValidator(WebhookValidator):
    provider = PaymentProvider.FLUTTERWAVE.value

    def validate(self, signature, raw_payload, secret):
        if not signature or not secret:
            return False
        digest = hmac.new(secret.encode("utf-8"), raw_payload, hashlib.sha256).digest()
        expected = base64.b64encode(digest).decode("utf-8")
        if hmac.compare_digest(expected, signature):
            return True
        return hmac.compare_digest(secret, signature)


class MonnifySignatureValidator(WebhookValidator):
    provider = PaymentProvider.MONNIFY.value

    def validate(self, signature, raw_payload, secret):
        if not signature or not secret:
            return False
        expected = hmac.new(secret.encode("utf-8"), raw_payload, hashlib.sha512).hexdigest()
        return hmac.compare_digest(expected, signature.lower())


class StripeSignatureValidator(WebhookValidator):
    provider = PaymentProvider.STRIPE.value

    def __init__(self, tolerance: int = STRIPE_TOLERANCE_SECONDS):
        self.tolerance = tolerance

    def validate(self, signature, raw_payload, secret):
        if not signature or not secret:
            return False
        try:
            stripe.WebhookSignature.verify_header(
                raw_payload.decode("utf-8"), signature, secret, tolerance=self.tolerance
            )
        except stripe.SignatureVerificationError as e:
            logger.warning(f"[WEBHOOK] Stripe signature rejected: {e}")
            return False
        except UnicodeDecodeError:
            return False
        return True


def default_validators() -> Dict[str, WebhookValidator]:
    return {
        validator.provider: validator
        for validator in (
            FlutterwaveSignatureValidator(),
            MonnifySignatureValidator(),
            StripeSignatureValidator(),
        )
    }


# =============================================================================
# EVENT PARSING
# =============================================================================

@dataclass
class WebhookEvent:
    """Provider event mapped onto the ledger."""
    provider: str
    event_type: str
    outcome: str  # completed, failed, ignored
    reference: Optional[str] = None
    provider_reference: Optional[str] = None
    amount: Optional[int] = None  # Minor units, when reported
    currency: Optional[str] = None
    customer_email: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


def _load_json(raw_payload: bytes) -> Dict[str, Any]:
    try:
        body = json.loads(raw_payload)
    except (ValueError, UnicodeDecodeError):
        raise ValidationError("Webhook payload is not valid JSON")
    if not isinstance(body, dict):
        raise ValidationError("Webhook payload must be a JSON object")
    return body


def _parse_flutterwave(body: Dict[str, Any]) -> WebhookEvent:
    event_type = body.get("event") or ""
    if event_type != "charge.completed":
        return WebhookEvent(PaymentProvider.FLUTTERWAVE.value, event_type, OUTCOME_IGNORED, raw=body)

    payload = FlutterwaveWebhookPayload.model_validate(body)
    data = payload.data
    if data.status == "successful":
        outcome = PaymentStatus.COMPLETED.value
    elif data.status == "failed":
        outcome = PaymentStatus.FAILED.value
    else:
        outcome = OUTCOME_IGNORED

    return WebhookEvent(
        provider=PaymentProvider.FLUTTERWAVE.value,
        event_type=event_type,
        outcome=outcome,
        reference=data.tx_ref,
        provider_reference=str(data.id) if data.id is not None else data.flw_ref,
        amount=to_minor_units(data.amount) if data.amount is not None else None,
        currency=data.currency,
        customer_email=data.customer.email,
        raw=body
    )


MONNIFY_EVENT_OUTCOMES = {
    "SUCCESSFUL_TRANSACTION": PaymentStatus.COMPLETED.value,
    "FAILED_TRANSACTION": PaymentStatus.FAILED.value,
    "REJECTED_PAYMENT": PaymentStatus.FAILED.value,
}


def _parse_monnify(body: Dict[str, Any]) -> WebhookEvent:
    event_type = body.get("eventType") or ""
    if event_type not in MONNIFY_EVENT_OUTCOMES:
        return WebhookEvent(PaymentProvider.MONNIFY.value, event_type, OUTCOME_IGNORED, raw=body)

    payload = MonnifyWebhookPayload.model_validate(body)
    data = payload.event_data
    return WebhookEvent(
        provider=PaymentProvider.MONNIFY.value,
        event_type=event_type,
        outcome=MONNIFY_EVENT_OUTCOMES[event_type],
        reference=data.payment_reference,
        provider_reference=data.transaction_reference,
        amount=to_minor_units(data.amount_paid) if data.amount_paid is not None else None,
        currency=data.currency,
        customer_email=data.customer.email,
        raw=body
    )


STRIPE_HANDLED_EVENTS = {
    "checkout.session.completed",
    "checkout.session.async_payment_succeeded",
    "checkout.session.async_payment_failed",
    "checkout.session.expired",
}


def _parse_stripe(body: Dict[str, Any]) -> WebhookEvent:
    event_type = body.get("type") or ""
    if event_type not in STRIPE_HANDLED_EVENTS:
        return WebhookEvent(PaymentProvider.STRIPE.value, event_type, OUTCOME_IGNORED, raw=body)

    event = StripeWebhookEvent.model_validate(body)
    session = event.data.object
    reference = session.client_reference_id or session.metadata.get("reference")
    if not reference:
        raise ValidationError("Stripe checkout session carries no payment reference")

    if event_type == "checkout.session.completed":
        # Delayed payment methods complete the session before funds arrive
        outcome = PaymentStatus.COMPLETED.value if session.payment_status == "paid" else OUTCOME_IGNORED
    elif event_type == "checkout.session.async_payment_succeeded":
        outcome = PaymentStatus.COMPLETED.value
    else:
        outcome = PaymentStatus.FAILED.value

    return WebhookEvent(
        provider=PaymentProvider.STRIPE.value,
        event_type=event_type,
        outcome=outcome,
        reference=reference,
        provider_reference=session.id,
        amount=session.amount_total,
        currency=session.currency,
        customer_email=session.customer_details.email if session.customer_details else None,
        raw=body
    )


PARSERS = {
    PaymentProvider.FLUTTERWAVE.value: _parse_flutterwave,
    PaymentProvider.MONNIFY.value: _parse_monnify,
    PaymentProvider.STRIPE.value: _parse_stripe,
}


def parse_webhook_event(provider: str, raw_payload: bytes) -> WebhookEvent:
    """
    Parse an authenticated payload. Malformed payloads raise ValidationError
    and never reach the ledger.
    """
    parser = PARSERS.get(provider)
    if parser is None:
        raise ValidationError(f"Invalid payment provider: {provider}", field="provider")

    body = _load_json(raw_payload)
    try:
        return parser(body)
    except pydantic.ValidationError as e:
        logger.warning(f"[WEBHOOK] Malformed {provider} payload: {e.error_count()} error(s)")
        raise ValidationError(f"Malformed {provider} webhook payload")
