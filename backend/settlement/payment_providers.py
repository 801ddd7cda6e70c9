"""
PAYMENT GATEWAY CLIENTS

One client per integrated processor, all behind the same two calls:

    initialize(details) -> InitializationResult(redirect_url, provider_reference)
    verify(reference, provider_reference) -> VerificationResult(succeeded, failed, ...)

Each client normalizes its gateway's response shape so the settlement
service never looks at provider payloads. Every gateway failure surfaces
as ProviderError; ambiguous=True marks failures after which the gateway
may still hold the transaction (timeouts, 5xx).
"""

from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List
import asyncio
import base64
import logging

import httpx
import stripe

from models import PaymentProvider
from settlement.errors import ProviderError, ValidationError
from settlement.financial_precision import from_minor_units, to_minor_units

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 15.0


@dataclass
class PaymentDetails:
    """What a gateway needs to open a checkout for one ledger entry."""
    reference: str
    amount: int  # Minor units
    currency: str
    email: str
    name: str
    description: str
    redirect_url: str
    phone_number: Optional[str] = None


@dataclass
class InitializationResult:
    redirect_url: str
    provider_reference: Optional[str] = None


@dataclass
class VerificationResult:
    """
    Normalized verification answer. Neither succeeded nor failed means the
    gateway still considers the transaction in flight.
    """
    succeeded: bool
    failed: bool = False
    amount: Optional[int] = None  # Minor units, when reported
    currency: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


class PaymentProviderClient:
    """Base class for gateway clients."""

    name: str = ""

    async def initialize(self, details: PaymentDetails) -> InitializationResult:
        raise NotImplementedError

    async def verify(
        self,
        reference: str,
        provider_reference: Optional[str] = None
    ) -> VerificationResult:
        raise NotImplementedError


class HttpProviderClient(PaymentProviderClient):
    """Shared httpx plumbing for REST gateways."""

    def __init__(
        self,
        base_url: str,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._http_client = http_client

    async def _send(
        self,
        method: str,
        path: str,
        reference: Optional[str],
        headers: Dict[str, str],
        **kwargs
    ) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            if self._http_client is not None:
                response = await self._http_client.request(method, url, headers=headers, **kwargs)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.request(method, url, headers=headers, **kwargs)
        except httpx.TimeoutException as e:
            logger.error(f"[PROVIDER] {self.name} timeout on {path} for {reference}: {e}")
            raise ProviderError(self.name, "gateway timed out", reference=reference, ambiguous=True)
        except httpx.HTTPError as e:
            logger.error(f"[PROVIDER] {self.name} transport error on {path} for {reference}: {e}")
            raise ProviderError(self.name, f"gateway unreachable: {e}", reference=reference)

        if response.status_code >= 400:
            logger.error(
                f"[PROVIDER] {self.name} returned {response.status_code} on {path} "
                f"for {reference}: {response.text[:200]}"
            )
            raise ProviderError(
                self.name,
                f"gateway returned HTTP {response.status_code}",
                reference=reference,
                status_code=response.status_code,
                ambiguous=response.status_code >= 500
            )

        try:
            body = response.json()
        except ValueError:
            raise ProviderError(self.name, "gateway returned a non-JSON body", reference=reference)
        if not isinstance(body, dict):
            logger.error(f"[PROVIDER] {self.name} returned a non-object body on {path} for {reference}")
            raise ProviderError(self.name, "gateway returned an unexpected body", reference=reference)
        return body


# =============================================================================
# FLUTTERWAVE
# =============================================================================

class FlutterwaveClient(HttpProviderClient):
    name = PaymentProvider.FLUTTERWAVE.value

    def __init__(self, secret_key: str, base_url: str = "https://api.flutterwave.com", **kwargs):
        super().__init__(base_url, **kwargs)
        self.secret_key = secret_key

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json"
        }

    async def initialize(self, details: PaymentDetails) -> InitializationResult:
        payload = {
            "tx_ref": details.reference,
            "amount": float(from_minor_units(details.amount)),
            "currency": details.currency,
            "payment_options": "card,banktransfer,ussd",
            "redirect_url": details.redirect_url,
            "customer": {
                "email": details.email,
                "name": details.name,
                "phonenumber": details.phone_number,
            },
            "customizations": {
                "title": "Service Charge Payment",
                "description": details.description,
            },
            "meta": {"source": "web"},
        }
        body = await self._send("POST", "/v3/payments", details.reference, self._headers(), json=payload)

        link = (body.get("data") or {}).get("link")
        if body.get("status") != "success" or not link:
            raise ProviderError(self.name, body.get("message", "no checkout link returned"),
                                reference=details.reference)

        logger.info(f"[PROVIDER] Flutterwave checkout opened for {details.reference}")
        return InitializationResult(redirect_url=link)

    async def verify(self, reference: str, provider_reference: Optional[str] = None) -> VerificationResult:
        body = await self._send(
            "GET",
            "/v3/transactions/verify_by_reference",
            reference,
            self._headers(),
            params={"tx_ref": reference}
        )
        data = body.get("data") or {}
        status = data.get("status")
        amount = data.get("amount")

        return VerificationResult(
            succeeded=body.get("status") == "success" and status == "successful",
            failed=status == "failed",
            amount=to_minor_units(amount) if amount is not None else None,
            currency=data.get("currency"),
            raw=body
        )


# =============================================================================
# MONNIFY
# =============================================================================

MONNIFY_SUCCESS_STATUSES = {"PAID", "OVERPAID"}
MONNIFY_FAILURE_STATUSES = {"FAILED", "EXPIRED", "CANCELLED", "REVERSED"}


class MonnifyClient(HttpProviderClient):
    name = PaymentProvider.MONNIFY.value

    def __init__(
        self,
        api_key: str,
        secret_key: str,
        contract_code: str,
        base_url: str = "https://api.monnify.com",
        **kwargs
    ):
        super().__init__(base_url, **kwargs)
        self.api_key = api_key
        self.secret_key = secret_key
        self.contract_code = contract_code

    async def _bearer_headers(self, reference: str) -> Dict[str, str]:
        basic = base64.b64encode(f"{self.api_key}:{self.secret_key}".encode()).decode()
        body = await self._send(
            "POST",
            "/api/v1/auth/login",
            reference,
            {"Authorization": f"Basic {basic}"}
        )
        token = (body.get("responseBody") or {}).get("accessToken")
        if not token:
            raise ProviderError(self.name, "authentication failed", reference=reference)
        return {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}

    async def initialize(self, details: PaymentDetails) -> InitializationResult:
        payload = {
            "amount": float(from_minor_units(details.amount)),
            "customerName": details.name,
            "customerEmail": details.email,
            "paymentReference": details.reference,
            "paymentDescription": details.description,
            "currencyCode": details.currency,
            "contractCode": self.contract_code,
            "redirectUrl": details.redirect_url,
            "paymentMethods": ["CARD", "ACCOUNT_TRANSFER", "USSD"],
        }
        headers = await self._bearer_headers(details.reference)
        body = await self._send(
            "POST",
            "/api/v1/merchant/transactions/init-transaction",
            details.reference,
            headers,
            json=payload
        )

        response_body = body.get("responseBody") or {}
        checkout_url = response_body.get("checkoutUrl")
        if not body.get("requestSuccessful") or not checkout_url:
            raise ProviderError(self.name, body.get("responseMessage", "no checkout url returned"),
                                reference=details.reference)

        logger.info(f"[PROVIDER] Monnify checkout opened for {details.reference}")
        return InitializationResult(
            redirect_url=checkout_url,
            provider_reference=response_body.get("transactionReference")
        )

    async def verify(self, reference: str, provider_reference: Optional[str] = None) -> VerificationResult:
        headers = await self._bearer_headers(reference)
        body = await self._send(
            "GET",
            "/api/v2/merchant/transactions/query",
            reference,
            headers,
            params={"paymentReference": reference}
        )
        response_body = body.get("responseBody") or {}
        status = response_body.get("paymentStatus")
        amount = response_body.get("amountPaid")

        return VerificationResult(
            succeeded=status in MONNIFY_SUCCESS_STATUSES,
            failed=status in MONNIFY_FAILURE_STATUSES,
            amount=to_minor_units(amount) if amount is not None else None,
            currency=response_body.get("currencyCode"),
            raw=body
        )


# =============================================================================
# STRIPE CHECKOUT
# =============================================================================

class StripeCheckoutClient(PaymentProviderClient):
    """
    Stripe Checkout sessions. The SDK is synchronous, so calls run in a
    worker thread. Stripe takes amounts in minor units.
    """

    name = PaymentProvider.STRIPE.value

    def __init__(self, secret_key: str):
        self.secret_key = secret_key

    async def _call(self, reference: str, func, *args, **kwargs):
        try:
            return await asyncio.to_thread(func, *args, api_key=self.secret_key, **kwargs)
        except stripe.APIConnectionError as e:
            logger.error(f"[PROVIDER] Stripe connection error for {reference}: {e}")
            raise ProviderError(self.name, "gateway unreachable", reference=reference, ambiguous=True)
        except stripe.StripeError as e:
            logger.error(f"[PROVIDER] Stripe error for {reference}: {e}")
            status_code = getattr(e, "http_status", None)
            raise ProviderError(
                self.name,
                str(e.user_message or e),
                reference=reference,
                status_code=status_code,
                ambiguous=bool(status_code and status_code >= 500)
            )

    async def initialize(self, details: PaymentDetails) -> InitializationResult:
        session = await self._call(
            details.reference,
            stripe.checkout.Session.create,
            mode="payment",
            line_items=[
                {
                    "price_data": {
                        "currency": details.currency.lower(),
                        "product_data": {"name": details.description},
                        "unit_amount": details.amount,
                    },
                    "quantity": 1,
                }
            ],
            client_reference_id=details.reference,
            customer_email=details.email,
            metadata={"reference": details.reference},
            success_url=details.redirect_url,
            cancel_url=details.redirect_url,
        )
        url = getattr(session, "url", None)
        if not url:
            raise ProviderError(self.name, "no checkout url returned", reference=details.reference)

        logger.info(f"[PROVIDER] Stripe checkout session {session.id} opened for {details.reference}")
        return InitializationResult(redirect_url=url, provider_reference=session.id)

    async def verify(self, reference: str, provider_reference: Optional[str] = None) -> VerificationResult:
        if not provider_reference:
            raise ProviderError(self.name, "no checkout session recorded for payment", reference=reference)

        session = await self._call(reference, stripe.checkout.Session.retrieve, provider_reference)
        payment_status = getattr(session, "payment_status", None)
        session_status = getattr(session, "status", None)
        currency = getattr(session, "currency", None)
        return VerificationResult(
            succeeded=payment_status == "paid",
            failed=session_status == "expired",
            amount=getattr(session, "amount_total", None),
            currency=currency.upper() if currency else None,
            raw={"id": session.id, "payment_status": payment_status, "status": session_status}
        )


# =============================================================================
# REGISTRY
# =============================================================================

class ProviderRegistry:
    """
    Process-scoped set of configured gateway clients. One instance is built
    at application startup and handed to the settlement service.
    """

    def __init__(self):
        self._clients: Dict[str, PaymentProviderClient] = {}

    def register(self, client: PaymentProviderClient) -> "ProviderRegistry":
        self._clients[client.name] = client
        logger.info(f"[PROVIDER] Registered payment provider: {client.name}")
        return self

    def get(self, provider: str) -> PaymentProviderClient:
        client = self._clients.get(provider)
        if client is None:
            raise ValidationError(f"Invalid payment provider: {provider}", field="provider")
        return client

    def providers(self) -> List[str]:
        return list(self._clients.keys())


def build_provider_registry(settings, http_client: Optional[httpx.AsyncClient] = None) -> ProviderRegistry:
    """Register every provider whose credentials are configured."""
    registry = ProviderRegistry()
    timeout = settings.PROVIDER_TIMEOUT_SECONDS

    if settings.FLUTTERWAVE_SECRET_KEY:
        registry.register(FlutterwaveClient(
            settings.FLUTTERWAVE_SECRET_KEY,
            base_url=settings.FLUTTERWAVE_BASE_URL,
            timeout=timeout,
            http_client=http_client
        ))
    if settings.MONNIFY_API_KEY and settings.MONNIFY_SECRET_KEY:
        registry.register(MonnifyClient(
            settings.MONNIFY_API_KEY,
            settings.MONNIFY_SECRET_KEY,
            settings.MONNIFY_CONTRACT_CODE,
            base_url=settings.MONNIFY_BASE_URL,
            timeout=timeout,
            http_client=http_client
        ))
    if settings.STRIPE_SECRET_KEY:
        registry.register(StripeCheckoutClient(settings.STRIPE_SECRET_KEY))

    if not registry.providers():
        logger.warning("[PROVIDER] No payment providers configured")
    return registry
