"""Payment Gateway Adapter - one interface over the supported providers.

Each provider implements:
- initiate(request) -> PaymentSession | PaymentFailure
- parse_webhook(raw_payload, signature) -> PaymentEvent | InvalidWebhook
- verify(reference) -> PaymentEvent | PaymentFailure

Provider field names never leave this module. Callers speak major units
(Decimal); conversion to the provider's unit happens here only.

Expected failures (missing credentials, provider rejection, timeout, 5xx)
come back as PaymentFailure, never as exceptions.

Webhook secret policy: a missing secret rejects every webhook (fail closed)
for every provider.
"""
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Any, Dict, Optional, Tuple, Union
from models import (
    InvalidWebhook, PaymentEvent, PaymentFailure, PaymentMethodKind,
    PaymentRequest, PaymentSession,
)
import hashlib
import hmac
import json
import os
import re
import secrets
import time
import httpx
import logging

logger = logging.getLogger(__name__)

NOT_CONFIGURED_MESSAGE = "Payment gateway not configured. Please contact support."
TIMEOUT_MESSAGE = "Payment provider did not respond in time. Please try again."
UNAVAILABLE_MESSAGE = "Payment provider is temporarily unavailable. Please try again."
PHONE_REQUIRED_MESSAGE = "Phone number is required for mobile money payments"
INVALID_PHONE_MESSAGE = "Invalid phone number. Use the format 07XXXXXXXX or +2547XXXXXXXX"

DEFAULT_TIMEOUT_SECONDS = 20.0


# ============================================================================
# SHARED HELPERS
# ============================================================================

def normalize_phone_number(phone: Optional[str], default_country_code: str = "254") -> Optional[str]:
    """Normalize a phone number to E.164. Kenyan local forms are expanded.

    0712345678    -> +254712345678
    254712345678  -> +254712345678
    712345678     -> +254712345678
    Returns None when the input cannot be a valid number.
    """
    if not phone:
        return None
    cleaned = re.sub(r"[\s\-().]", "", str(phone))
    if cleaned.startswith("+"):
        digits = cleaned[1:]
    elif cleaned.startswith("00"):
        digits = cleaned[2:]
    elif cleaned.startswith("0"):
        digits = default_country_code + cleaned[1:]
    elif cleaned.startswith(default_country_code):
        digits = cleaned
    elif len(cleaned) == 9:
        digits = default_country_code + cleaned
    else:
        digits = cleaned

    if not digits.isdigit() or not 10 <= len(digits) <= 15:
        return None
    return f"+{digits}"


def mask_phone(phone: Optional[str]) -> str:
    if not phone:
        return "***"
    return phone[:4] + "***" + phone[-2:]


def mask_email(email: Optional[str]) -> str:
    if not email or "@" not in email:
        return "***"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


def to_minor_units(amount: Decimal) -> int:
    """Major units to integer minor units (x100), half-up."""
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(value) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        return (Decimal(str(value)) / 100).quantize(Decimal("0.01"))
    except InvalidOperation:
        return None


def to_decimal(value) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


def parse_timestamp(value) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def generate_reference(prefix: str = "sub") -> str:
    return f"{prefix}_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


def _coerce_metadata(value) -> Dict[str, Any]:
    """Provider metadata may arrive as an object or as a JSON string."""
    if isinstance(value, dict):
        return value
    if isinstance(value, str) and value:
        try:
            decoded = json.loads(value)
        except ValueError:
            return {}
        return decoded if isinstance(decoded, dict) else {}
    return {}


# ============================================================================
# INTERFACE
# ============================================================================

class PaymentGateway(ABC):
    """Capability set every provider adapter offers."""

    provider_name: str = ""
    signature_header: str = ""

    @abstractmethod
    async def initiate(self, request: PaymentRequest) -> Union[PaymentSession, PaymentFailure]:
        ...

    @abstractmethod
    def parse_webhook(self, raw_payload: bytes, signature: Optional[str]) -> Union[PaymentEvent, InvalidWebhook]:
        ...

    @abstractmethod
    async def verify(self, reference: str, checkout_reference: Optional[str] = None) -> Union[PaymentEvent, PaymentFailure]:
        ...


class HttpPaymentGateway(PaymentGateway):
    """Shared plumbing: credentials check, bounded-timeout httpx calls, HMAC checks."""

    digestmod = hashlib.sha256

    def __init__(
        self,
        secret_key: Optional[str],
        webhook_secret: Optional[str],
        api_url: str,
        public_key: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.secret_key = secret_key
        self.public_key = public_key
        self.webhook_secret = webhook_secret
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    def is_configured(self) -> bool:
        return bool(self.secret_key)

    def _auth_headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.secret_key}"}

    def _not_configured(self) -> PaymentFailure:
        logger.error(f"{self.provider_name} credentials are not configured")
        return PaymentFailure(reason_message=NOT_CONFIGURED_MESSAGE, configuration_missing=True)

    async def _request(
        self,
        method: str,
        path: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Tuple[Optional[Dict[str, Any]], Optional[PaymentFailure]]:
        """Call the provider. Returns (body, None) on 2xx, else (None, failure)."""
        headers = {
            **self._auth_headers(),
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        try:
            async with httpx.AsyncClient(
                base_url=self.api_url,
                timeout=self.timeout,
                transport=self.transport,
            ) as client:
                response = await client.request(method, path, json=payload, headers=headers)
        except httpx.TimeoutException:
            logger.error(f"{self.provider_name} API timeout: {method} {path}")
            return None, PaymentFailure(reason_message=TIMEOUT_MESSAGE, retryable=True)
        except httpx.HTTPError as e:
            logger.error(f"{self.provider_name} API transport error: {method} {path}: {e}")
            return None, PaymentFailure(reason_message=UNAVAILABLE_MESSAGE, retryable=True)

        try:
            body = response.json()
        except ValueError:
            body = None

        if response.status_code >= 500:
            logger.error(f"{self.provider_name} API {response.status_code}: {method} {path}")
            return None, PaymentFailure(
                reason_message=UNAVAILABLE_MESSAGE,
                retryable=True,
                details={"status_code": response.status_code},
            )

        if response.status_code >= 400 or not isinstance(body, dict):
            message = None
            if isinstance(body, dict):
                message = body.get("message") or body.get("detail") or body.get("error")
            logger.warning(f"{self.provider_name} API rejected {method} {path}: {response.status_code} {message}")
            return None, PaymentFailure(
                reason_message=str(message or f"Payment request failed ({response.status_code})"),
                details={"status_code": response.status_code},
            )

        return body, None

    def _check_signature(self, raw_payload: bytes, signature: Optional[str]) -> Optional[InvalidWebhook]:
        """Constant-time HMAC check of the raw body. None means valid."""
        if not self.webhook_secret:
            logger.error(f"{self.provider_name} webhook secret not configured, rejecting webhook")
            return InvalidWebhook(reason="webhook_secret_not_configured")
        if not signature:
            return InvalidWebhook(reason="missing_signature")

        expected = hmac.new(
            self.webhook_secret.encode("utf-8"),
            raw_payload,
            self.digestmod,
        ).hexdigest()
        if not hmac.compare_digest(expected, signature.strip().lower()):
            return InvalidWebhook(reason="signature_mismatch")
        return None

    def _decode(self, raw_payload: bytes) -> Union[Dict[str, Any], InvalidWebhook]:
        try:
            payload = json.loads(raw_payload)
        except ValueError:
            return InvalidWebhook(reason="malformed_payload")
        if not isinstance(payload, dict):
            return InvalidWebhook(reason="malformed_payload")
        return payload


# ============================================================================
# PAYSTACK (card checkout + M-Pesa mobile money charge)
# ============================================================================

class PaystackGateway(HttpPaymentGateway):
    provider_name = "paystack"
    signature_header = "x-paystack-signature"
    digestmod = hashlib.sha512

    @classmethod
    def from_env(cls, transport: Optional[httpx.AsyncBaseTransport] = None) -> "PaystackGateway":
        secret_key = os.getenv("PAYSTACK_SECRET_KEY")
        return cls(
            secret_key=secret_key,
            public_key=os.getenv("PAYSTACK_PUBLIC_KEY"),
            # Paystack signs webhooks with the secret key unless a dedicated secret is set
            webhook_secret=os.getenv("PAYSTACK_WEBHOOK_SECRET") or secret_key,
            api_url=os.getenv("PAYSTACK_API_URL", "https://api.paystack.co"),
            timeout=float(os.getenv("PAYMENT_GATEWAY_TIMEOUT_SECONDS", DEFAULT_TIMEOUT_SECONDS)),
            transport=transport,
        )

    async def initiate(self, request: PaymentRequest) -> Union[PaymentSession, PaymentFailure]:
        if not self.is_configured():
            return self._not_configured()

        reference = generate_reference()
        payload: Dict[str, Any] = {
            "email": request.payer_email,
            "amount": to_minor_units(request.amount),
            "currency": request.currency,
            "reference": reference,
            "metadata": {**request.metadata, "narrative": request.narrative},
        }

        if request.payment_method == PaymentMethodKind.MOBILE_MONEY:
            if not request.phone_number:
                return PaymentFailure(reason_message=PHONE_REQUIRED_MESSAGE)
            phone = normalize_phone_number(request.phone_number)
            if not phone:
                return PaymentFailure(reason_message=INVALID_PHONE_MESSAGE)
            payload["mobile_money"] = {"phone": phone, "provider": "mpesa"}
            logger.info(
                f"Paystack mobile money charge: amount={payload['amount']} {request.currency} "
                f"phone={mask_phone(phone)} reference={reference}"
            )
            body, failure = await self._request("POST", "/charge", payload)
        else:
            if request.callback_url:
                payload["callback_url"] = request.callback_url
            payload["channels"] = ["card"]
            logger.info(
                f"Paystack checkout: amount={payload['amount']} {request.currency} "
                f"email={mask_email(request.payer_email)} reference={reference}"
            )
            body, failure = await self._request("POST", "/transaction/initialize", payload)

        if failure:
            return failure
        if not body.get("status"):
            return PaymentFailure(reason_message=body.get("message") or "Payment initialization failed")

        data = body.get("data") or {}
        return PaymentSession(
            correlation_id=data.get("reference") or reference,
            checkout_reference=str(data.get("access_code") or data.get("reference") or reference),
            status="pending",
            redirect_url=data.get("authorization_url"),
            provider=self.provider_name,
        )

    def _normalize(self, data: Dict[str, Any], event: Optional[str]) -> PaymentEvent:
        data_status = data.get("status")
        is_success = event == "charge.success" and data_status == "success"
        return PaymentEvent(
            provider=self.provider_name,
            correlation_id=data.get("reference"),
            is_success=is_success,
            amount=from_minor_units(data.get("amount")),
            currency=data.get("currency"),
            raw_status=data_status or event,
            metadata=_coerce_metadata(data.get("metadata")),
            occurred_at=parse_timestamp(data.get("paid_at") or data.get("paidAt") or data.get("created_at")),
        )

    def parse_webhook(self, raw_payload: bytes, signature: Optional[str]) -> Union[PaymentEvent, InvalidWebhook]:
        invalid = self._check_signature(raw_payload, signature)
        if invalid:
            return invalid
        payload = self._decode(raw_payload)
        if isinstance(payload, InvalidWebhook):
            return payload
        return self._normalize(payload.get("data") or {}, payload.get("event"))

    async def verify(self, reference: str, checkout_reference: Optional[str] = None) -> Union[PaymentEvent, PaymentFailure]:
        if not self.is_configured():
            return self._not_configured()
        body, failure = await self._request("GET", f"/transaction/verify/{reference}")
        if failure:
            return failure
        data = body.get("data") or {}
        # Verification has no event type; a successful transaction is the charge.success equivalent
        event = "charge.success" if data.get("status") == "success" else None
        normalized = self._normalize(data, event)
        if not normalized.correlation_id:
            normalized.correlation_id = reference
        return normalized


# ============================================================================
# INTASEND (card payment links + M-Pesa STK push)
# ============================================================================

INTASEND_SUCCESS_STATES = frozenset({"COMPLETE", "completed", "success"})


class IntaSendGateway(HttpPaymentGateway):
    provider_name = "intasend"
    signature_header = "x-intasend-signature"
    digestmod = hashlib.sha256

    @classmethod
    def from_env(cls, transport: Optional[httpx.AsyncBaseTransport] = None) -> "IntaSendGateway":
        return cls(
            secret_key=os.getenv("INTASEND_SECRET_KEY"),
            public_key=os.getenv("INTASEND_PUBLIC_KEY"),
            webhook_secret=os.getenv("INTASEND_WEBHOOK_SECRET"),
            api_url=os.getenv("INTASEND_API_URL", "https://payment.intasend.com"),
            timeout=float(os.getenv("PAYMENT_GATEWAY_TIMEOUT_SECONDS", DEFAULT_TIMEOUT_SECONDS)),
            transport=transport,
        )

    def is_configured(self) -> bool:
        return bool(self.secret_key and self.public_key)

    async def initiate(self, request: PaymentRequest) -> Union[PaymentSession, PaymentFailure]:
        if not self.is_configured():
            return self._not_configured()

        api_ref = generate_reference()
        first_name, _, last_name = (request.payer_name or "").partition(" ")
        payload: Dict[str, Any] = {
            "public_key": self.public_key,
            # IntaSend takes major units
            "amount": str(Decimal(request.amount).quantize(Decimal("0.01"))),
            "currency": request.currency,
            "email": request.payer_email,
            "first_name": first_name or None,
            "last_name": last_name or None,
            "narrative": request.narrative,
            "api_ref": api_ref,
            "metadata": request.metadata,
        }
        if request.callback_url:
            payload["callback_url"] = request.callback_url

        if request.payment_method == PaymentMethodKind.MOBILE_MONEY:
            if not request.phone_number:
                return PaymentFailure(reason_message=PHONE_REQUIRED_MESSAGE)
            phone = normalize_phone_number(request.phone_number)
            if not phone:
                return PaymentFailure(reason_message=INVALID_PHONE_MESSAGE)
            payload["phone_number"] = phone.lstrip("+")
            logger.info(
                f"IntaSend STK push: amount={payload['amount']} {request.currency} "
                f"phone={mask_phone(phone)} api_ref={api_ref}"
            )
            body, failure = await self._request("POST", "/api/v1/payment/mpesa-stk-push/", payload)
        else:
            logger.info(
                f"IntaSend payment link: amount={payload['amount']} {request.currency} "
                f"email={mask_email(request.payer_email)} api_ref={api_ref}"
            )
            body, failure = await self._request("POST", "/api/v1/payment/links/", payload)

        if failure:
            return failure

        invoice = body.get("invoice") or {}
        return PaymentSession(
            correlation_id=api_ref,
            checkout_reference=str(invoice.get("invoice_id") or body.get("invoice_id") or body.get("id") or api_ref),
            status="pending",
            redirect_url=body.get("url") or body.get("checkout_url"),
            provider=self.provider_name,
        )

    def _normalize(self, data: Dict[str, Any], fallback_reference: Optional[str] = None) -> PaymentEvent:
        invoice = data.get("invoice") if isinstance(data.get("invoice"), dict) else {}
        state = data.get("state") or invoice.get("state") or data.get("status")
        event = data.get("event")
        # When an event type is present it must be a payment/collection event
        event_ok = event is None or any(word in str(event).lower() for word in ("payment", "collection"))
        return PaymentEvent(
            provider=self.provider_name,
            correlation_id=data.get("api_ref") or invoice.get("api_ref") or fallback_reference or data.get("invoice_id"),
            is_success=state in INTASEND_SUCCESS_STATES and event_ok,
            amount=to_decimal(data.get("value") or data.get("amount") or invoice.get("value")),
            currency=data.get("currency") or invoice.get("currency"),
            raw_status=state,
            metadata=_coerce_metadata(data.get("metadata")),
            occurred_at=parse_timestamp(data.get("updated_at") or invoice.get("updated_at")),
        )

    def parse_webhook(self, raw_payload: bytes, signature: Optional[str]) -> Union[PaymentEvent, InvalidWebhook]:
        invalid = self._check_signature(raw_payload, signature)
        if invalid:
            return invalid
        payload = self._decode(raw_payload)
        if isinstance(payload, InvalidWebhook):
            return payload
        return self._normalize(payload)

    async def verify(self, reference: str, checkout_reference: Optional[str] = None) -> Union[PaymentEvent, PaymentFailure]:
        if not self.is_configured():
            return self._not_configured()
        body, failure = await self._request(
            "POST",
            "/api/v1/payment/status/",
            {"invoice_id": checkout_reference or reference},
        )
        if failure:
            return failure
        return self._normalize(body, fallback_reference=reference)


# ============================================================================
# FACTORY
# ============================================================================

GATEWAYS = {
    PaystackGateway.provider_name: PaystackGateway,
    IntaSendGateway.provider_name: IntaSendGateway,
}


def get_payment_gateway(name: Optional[str] = None) -> PaymentGateway:
    """Gateway selected by name, or by PAYMENT_GATEWAY (default paystack)."""
    provider = (name or os.getenv("PAYMENT_GATEWAY", "paystack")).strip().lower()
    gateway_cls = GATEWAYS.get(provider)
    if gateway_cls is None:
        raise ValueError(f"Unsupported payment gateway: {provider}")
    return gateway_cls.from_env()


def gateway_for_signature_header(headers) -> Tuple[PaymentGateway, Optional[str]]:
    """Pick the provider whose signature header is present on a webhook request."""
    for gateway_cls in GATEWAYS.values():
        signature = headers.get(gateway_cls.signature_header)
        if signature is not None:
            return gateway_cls.from_env(), signature
    gateway = get_payment_gateway()
    return gateway, None
