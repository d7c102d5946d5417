"""Payment Reconciliation Engine - applies normalized payment events to subscriptions.

Webhook delivery is at-least-once, unordered and may race the initiating
request. Reconciliation therefore only ever moves state through the
idempotent transitions in subscription_state:
- success -> confirm_payment (no-op for a settled or stale reference)
- failure -> mark_payment_failed (no-op for settled/superseded references)

Webhook handling (process_webhook):
1. Provider chosen by the signature header present on the request
2. Signature verified by the adapter; invalid -> rejected (HTTP 400)
3. Delivery dedupe through payment_events (unique event_key)
4. reconcile(); processing errors are recorded and still acknowledged
"""
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Tuple
from pymongo.errors import DuplicateKeyError
from database import database
from models import (
    AuditAction, InvalidWebhook, PaymentEvent, PaymentFailure, PlanName,
    ReconciliationResult,
)
from services.payment_gateway import (
    PaymentGateway, gateway_for_signature_header, get_payment_gateway,
)
from services.subscription_state import public_view, subscription_state
from utils.audit import create_audit_log
import logging

logger = logging.getLogger(__name__)

FAILED_STATES = frozenset({"failed", "reversed", "declined", "cancelled", "canceled"})


def _metadata_user_id(metadata: Dict[str, Any]) -> Optional[str]:
    value = metadata.get("user_id") or metadata.get("userId")
    return str(value) if value else None


def _metadata_plan(metadata: Dict[str, Any], fallback: Optional[str] = None) -> PlanName:
    raw = metadata.get("plan") or fallback
    try:
        plan = PlanName(str(raw).lower())
    except ValueError:
        return PlanName.PREMIUM
    # A successful payment never buys the free plan
    return PlanName.PREMIUM if plan == PlanName.FREE else plan


class PaymentReconciliationService:
    """Turns normalized payment events into subscription transitions."""

    async def _correlation_miss(self, event: PaymentEvent, reason: str) -> ReconciliationResult:
        logger.warning(
            f"PAYMENT_CORRELATION_MISS provider={event.provider} reference={event.correlation_id} reason={reason}"
        )
        await create_audit_log(
            action=AuditAction.PAYMENT_CORRELATION_MISS,
            actor_role="SYSTEM",
            resource_type="payment",
            resource_id=event.correlation_id,
            metadata={
                "provider": event.provider,
                "raw_status": event.raw_status,
                "is_success": event.is_success,
                "reason": reason,
            },
        )
        return ReconciliationResult(applied=False, reason=reason)

    async def reconcile(self, event: PaymentEvent) -> ReconciliationResult:
        """Apply one normalized event. Safe to repeat with the same event."""
        db = database.get_db()

        if not event.correlation_id:
            return await self._correlation_miss(event, "missing_correlation_id")

        record = await db.subscriptions.find_one(
            {"gateway_reference": event.correlation_id},
            {"_id": 0, "user_id": 1, "pending_plan": 1}
        )
        if not record:
            # First-time payers may not have a record that carries this reference yet
            record = await db.subscriptions.find_one(
                {"settled_references": event.correlation_id},
                {"_id": 0, "user_id": 1, "pending_plan": 1}
            )

        user_id = _metadata_user_id(event.metadata)
        if record:
            if user_id and user_id != record["user_id"]:
                logger.warning(
                    f"Payment metadata user {user_id} differs from reference owner {record['user_id']} "
                    f"for {event.correlation_id}; using reference owner"
                )
            user_id = record["user_id"]

        if not user_id:
            return await self._correlation_miss(event, "user_not_found")

        user = await db.users.find_one({"user_id": user_id}, {"_id": 0, "user_id": 1})
        if not user:
            return await self._correlation_miss(event, "user_not_found")

        if event.is_success:
            changed, reason, view = await subscription_state.confirm_payment(
                correlation_id=event.correlation_id,
                user_id=user_id,
                plan_name=_metadata_plan(event.metadata, (record or {}).get("pending_plan")),
                amount=event.amount,
                currency=event.currency,
                paid_at=event.occurred_at,
                provider=event.provider,
                payment_method=event.metadata.get("payment_method"),
            )
        else:
            changed, reason, view = await subscription_state.mark_payment_failed(
                event.correlation_id,
                reason=event.raw_status,
            )

        logger.info(
            f"Reconciled {event.provider} reference={event.correlation_id} user_id={user_id} "
            f"success={event.is_success} changed={changed} reason={reason}"
        )
        return ReconciliationResult(applied=True, reason=reason, user_id=user_id, subscription=view)

    # =========================================================================
    # Webhook entry point
    # =========================================================================

    async def process_webhook(
        self,
        payload: bytes,
        headers: Mapping[str, str],
        gateway: Optional[PaymentGateway] = None,
    ) -> Tuple[bool, str, Optional[Dict]]:
        """
        Verify, dedupe and reconcile one webhook delivery.

        Returns:
            (success, message, details) - success is False only for a rejected webhook
        """
        if gateway is None:
            gateway, signature = gateway_for_signature_header(headers)
        else:
            signature = headers.get(gateway.signature_header)

        parsed = gateway.parse_webhook(payload, signature)
        if isinstance(parsed, InvalidWebhook):
            logger.error(f"WEBHOOK_REJECTED provider={gateway.provider_name} reason={parsed.reason}")
            await create_audit_log(
                action=AuditAction.PAYMENT_WEBHOOK_REJECTED,
                actor_role="SYSTEM",
                resource_type="payment",
                metadata={"provider": gateway.provider_name, "reason": parsed.reason},
            )
            return False, "Invalid signature", {"reason": parsed.reason}

        event_key = parsed.event_key
        logger.info(
            f"WEBHOOK_RECEIVED provider={parsed.provider} reference={parsed.correlation_id} "
            f"status={parsed.raw_status} success={parsed.is_success}"
        )

        db = database.get_db()
        existing = await db.payment_events.find_one({"event_key": event_key}, {"_id": 0})
        if existing and existing.get("status") == "PROCESSED":
            logger.info(f"Webhook {event_key} already processed - skipping")
            return True, "Already processed", {"event_key": event_key}

        event_record = {
            "event_key": event_key,
            "provider": parsed.provider,
            "correlation_id": parsed.correlation_id,
            "raw_status": parsed.raw_status,
            "is_success": parsed.is_success,
            "received_at": datetime.now(timezone.utc),
            "processed_at": None,
            "status": "PROCESSING",
            "error": None,
            "result": None,
        }

        if existing:
            await db.payment_events.update_one({"event_key": event_key}, {"$set": event_record})
        else:
            try:
                await db.payment_events.insert_one(event_record)
            except DuplicateKeyError:
                logger.info(f"Webhook {event_key} duplicate insert (race) - skipping")
                return True, "Already processed", {"event_key": event_key}

        try:
            result = await self.reconcile(parsed)
            await db.payment_events.update_one(
                {"event_key": event_key},
                {"$set": {
                    "status": "PROCESSED",
                    "processed_at": datetime.now(timezone.utc),
                    "user_id": result.user_id,
                    "result": {"applied": result.applied, "reason": result.reason},
                }}
            )
            logger.info(
                f"WEBHOOK_PROCESSED_OK event_key={event_key} user_id={result.user_id} "
                f"applied={result.applied} reason={result.reason}"
            )
            return True, "Processed", {"event_key": event_key, **result.model_dump(exclude={"subscription"})}

        except Exception as e:
            logger.error(f"WEBHOOK_PROCESSING_FAILED event_key={event_key} error={e}")
            await db.payment_events.update_one(
                {"event_key": event_key},
                {"$set": {
                    "status": "FAILED",
                    "processed_at": datetime.now(timezone.utc),
                    "error": str(e),
                }}
            )
            # Acknowledge anyway so the provider does not retry-storm; verify endpoint recovers
            return True, "Event logged with error", {"event_key": event_key, "error": str(e)}

    # =========================================================================
    # Server-side verification
    # =========================================================================

    async def verify_payment(
        self,
        user: Dict[str, Any],
        reference: str,
        gateway: Optional[PaymentGateway] = None,
    ) -> Tuple[bool, str, Optional[Dict]]:
        """Look a payment up with the provider and reconcile the result.

        Returns:
            (success, message, details)
        """
        user_id = user["user_id"]
        record = await subscription_state.get_record(user_id)
        known = record and (
            record.get("gateway_reference") == reference
            or reference in (record.get("settled_references") or [])
        )
        if not known:
            return False, "Payment reference not found", {"error_code": "REFERENCE_NOT_FOUND"}

        if reference in (record.get("settled_references") or []):
            return True, "Payment already confirmed", {"status": "success", "subscription": public_view(record)}

        try:
            gateway = gateway or get_payment_gateway(record.get("gateway"))
        except ValueError as e:
            logger.error(f"Verification gateway unavailable: {e}")
            return False, "Payment gateway not configured. Please contact support.", {"error_code": "GATEWAY_NOT_CONFIGURED"}

        result = await gateway.verify(reference, record.get("gateway_checkout_reference"))
        if isinstance(result, PaymentFailure):
            return False, result.reason_message, {
                "error_code": "GATEWAY_NOT_CONFIGURED" if result.configuration_missing else "GATEWAY_FAILURE",
                "retryable": result.retryable,
            }

        owner = _metadata_user_id(result.metadata)
        if owner and owner != user_id:
            logger.warning(f"Verification of {reference} by {user_id} returned metadata for {owner}")
            return False, "Payment reference not found", {"error_code": "REFERENCE_NOT_FOUND"}
        result.metadata.setdefault("user_id", user_id)
        if record.get("pending_plan"):
            result.metadata.setdefault("plan", record["pending_plan"])

        status_value = (result.raw_status or "").lower()
        if not result.is_success and status_value not in FAILED_STATES:
            return True, "Payment is still pending", {"status": "pending", "subscription": public_view(record)}

        outcome = await self.reconcile(result)
        return True, "Payment verified" if result.is_success else "Payment failed", {
            "status": "success" if result.is_success else "failed",
            "reason": outcome.reason,
            "subscription": outcome.subscription,
        }


payment_reconciliation = PaymentReconciliationService()
