"""Subscription Routes

Endpoints:
- GET  /api/subscriptions/plans - Active plans, cheapest first (public)
- GET  /api/subscriptions/my-subscription - Effective subscription, usage and plan details
- POST /api/subscriptions/subscribe - Switch to the free plan
- POST /api/subscriptions/initiate-payment - Start a premium checkout (card or M-Pesa)
- POST /api/subscriptions/webhook - Payment provider webhook (signature verified)
- GET  /api/subscriptions/verify/{reference} - Server-side payment verification
- POST /api/subscriptions/cancel - Cancel at period end
- POST /api/subscriptions/reactivate - Undo a scheduled cancellation
"""
from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from middleware import require_user
from models import InitiatePaymentRequest, PaymentMethodKind, PlanName, SubscribeRequest
from services.payment_reconciliation import payment_reconciliation
from services.plan_registry import plan_registry
from services.subscription_state import public_view, subscription_state
from services.usage_counter import usage_counter
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/subscriptions", tags=["subscriptions"])

ERROR_STATUS = {
    "NO_PAYMENT_REQUIRED": status.HTTP_400_BAD_REQUEST,
    "PLAN_UNAVAILABLE": status.HTTP_404_NOT_FOUND,
    "REFERENCE_NOT_FOUND": status.HTTP_404_NOT_FOUND,
    "GATEWAY_NOT_CONFIGURED": status.HTTP_503_SERVICE_UNAVAILABLE,
}


def _failure_response(message: str, details: dict = None) -> JSONResponse:
    details = details or {}
    error_code = details.get("error_code")
    if error_code == "GATEWAY_FAILURE" and details.get("retryable"):
        status_code = status.HTTP_502_BAD_GATEWAY
    else:
        status_code = ERROR_STATUS.get(error_code, status.HTTP_400_BAD_REQUEST)
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "message": message, **details},
    )


@router.get("/plans")
async def get_plans():
    """Active plans for the pricing page. No auth required."""
    plans = await plan_registry.list_active_plans()
    return {"success": True, "plans": [plan.model_dump(mode="json") for plan in plans]}


@router.get("/my-subscription")
async def get_my_subscription(user: dict = Depends(require_user)):
    """Effective subscription (lazy expiry applied), usage and plan details."""
    effective = await subscription_state.get_effective(user["user_id"])
    record = await subscription_state.get_record(user["user_id"])
    usage = await usage_counter.snapshot(user)
    plan = await plan_registry.get_plan(effective.plan)

    return {
        "success": True,
        "subscription": public_view(record),
        "usage": usage,
        "plan": plan.model_dump(mode="json") if plan else None,
    }


@router.post("/subscribe")
async def subscribe(body: SubscribeRequest, user: dict = Depends(require_user)):
    """Subscribe to the free plan. Premium goes through initiate-payment."""
    if body.plan != PlanName.FREE:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={
                "success": False,
                "message": "Premium plan requires payment. Use initiate-payment.",
                "requiresPayment": True,
            },
        )

    success, message, subscription = await subscription_state.subscribe_free(user["user_id"])
    return {"success": success, "message": message, "subscription": subscription}


@router.post("/initiate-payment")
async def initiate_payment(body: InitiatePaymentRequest, user: dict = Depends(require_user)):
    """Start a premium checkout with the configured gateway."""
    try:
        success, message, details = await subscription_state.begin_paid_checkout(
            user,
            body.plan,
            payment_method=body.payment_method,
            phone_number=body.phone_number,
        )
    except ValueError as e:
        logger.error(f"Payment gateway selection failed: {e}")
        return _failure_response(
            "Payment gateway not configured. Please contact support.",
            {"error_code": "GATEWAY_NOT_CONFIGURED"},
        )

    if not success:
        return _failure_response(message, details)

    session = details["session"]
    if body.payment_method == PaymentMethodKind.MOBILE_MONEY:
        instructions = "Check your phone and enter your M-Pesa PIN to complete the payment."
    else:
        instructions = "You will be redirected to complete your payment securely."

    return {
        "success": True,
        "payment": {
            "correlationId": session.correlation_id,
            "checkoutReference": session.checkout_reference,
            "redirectUrl": session.redirect_url,
            "status": session.status,
            "provider": session.provider,
        },
        "instructions": instructions,
    }


@router.post("/webhook")
async def payment_webhook(request: Request):
    """Provider webhook. 400 only for a rejected signature; every other outcome is acknowledged."""
    payload = await request.body()

    success, message, details = await payment_reconciliation.process_webhook(payload, request.headers)
    if not success:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=message)

    return {"received": True, "message": message}


@router.get("/verify/{reference}")
async def verify_payment(reference: str, user: dict = Depends(require_user)):
    """Ask the provider for the payment's status and reconcile it."""
    success, message, details = await payment_reconciliation.verify_payment(user, reference)
    if not success:
        return _failure_response(message, details)
    return {"success": True, "message": message, **details}


@router.post("/cancel")
async def cancel_subscription(user: dict = Depends(require_user)):
    success, message, subscription = await subscription_state.cancel(user["user_id"])
    if not success:
        return _failure_response(message)
    return {"success": True, "message": message, "subscription": subscription}


@router.post("/reactivate")
async def reactivate_subscription(user: dict = Depends(require_user)):
    success, message, subscription = await subscription_state.reactivate(user["user_id"])
    if not success:
        return _failure_response(message)
    return {"success": True, "message": message, "subscription": subscription}
