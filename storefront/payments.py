import logging
from decimal import ROUND_HALF_UP, Decimal

import stripe
from flask import jsonify

from . import db
from .auth import STAFF_ROLES, current_user_id, optional_user, requires_auth
from .config import get_config
from .errors import PaymentError
from .utils import json_body

logger = logging.getLogger(__name__)

STRIPE_API_VERSION = "2024-12-18.acacia"
REFUND_REASONS = ("duplicate", "fraudulent", "requested_by_customer")


def _api_key() -> str:
    key = get_config().STRIPE_SECRET_KEY
    if not key:
        raise PaymentError("STRIPE_SECRET_KEY is not configured")
    return key


def _stripe_error(e: stripe.StripeError):
    logger.warning("stripe error: %s", e)
    status = getattr(e, "http_status", None) or 500
    return jsonify({"error": getattr(e, "user_message", None) or str(e)}), status


def find_or_create_customer(email: str, name: str | None, api_key: str) -> str:
    existing = stripe.Customer.list(email=email, limit=1, api_key=api_key)
    if existing.data:
        return existing.data[0].id
    customer = stripe.Customer.create(email=email, name=name or None, api_key=api_key)
    return customer.id


def retrieve_intent(intent_id: str):
    return stripe.PaymentIntent.retrieve(intent_id, api_key=_api_key())


def succeeded_intent(intent_id: str):
    """The PaymentIntent when it has been captured, otherwise None."""
    try:
        intent = retrieve_intent(intent_id)
    except stripe.StripeError as e:
        logger.warning("could not verify payment intent %s: %s", intent_id, e)
        return None
    return intent if intent.status == "succeeded" else None


def to_minor_units(amount) -> int:
    """Stripe amounts are integers in the smallest currency unit."""
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def normalize_refund_reason(reason: str | None) -> str:
    return reason if reason in REFUND_REASONS else "requested_by_customer"


def register_payments(app):
    @app.post("/api/payments/create-intent")
    def create_payment_intent():
        body = json_body()
        amount = body.get("amount")
        currency = (body.get("currency") or get_config().CURRENCY_CODE).lower()
        customer_id = body.get("customer_id")
        metadata = body.get("metadata") or {}
        if not isinstance(amount, int) or isinstance(amount, bool) or amount < 100:
            return jsonify({"error": "Amount must be at least 100 (smallest currency unit)"}), 400
        if not isinstance(metadata, dict):
            return jsonify({"error": "metadata must be an object"}), 400
        api_key = _api_key()
        user = optional_user()
        ephemeral_key = None
        try:
            if user and user.get("email") and not customer_id:
                customer_id = find_or_create_customer(user["email"], user.get("name"), api_key)
                key = stripe.EphemeralKey.create(
                    customer=customer_id,
                    stripe_version=STRIPE_API_VERSION,
                    api_key=api_key,
                )
                ephemeral_key = key.secret
            intent = stripe.PaymentIntent.create(
                amount=amount,
                currency=currency,
                customer=customer_id or None,
                metadata={**{str(k): str(v) for k, v in metadata.items()}, "user_id": (user or {}).get("sub") or "guest"},
                automatic_payment_methods={"enabled": True},
                api_key=api_key,
            )
        except stripe.StripeError as e:
            return _stripe_error(e)
        app.logger.info("payment intent created id=%s amount=%s %s", intent.id, amount, currency)
        return jsonify({
            "client_secret": intent.client_secret,
            "payment_intent_id": intent.id,
            "customer_id": customer_id,
            "ephemeral_key": ephemeral_key,
        })

    @app.get("/api/payments/verify/<transaction_id>")
    def verify_payment(transaction_id: str):
        try:
            intent = retrieve_intent(transaction_id)
        except stripe.StripeError as e:
            return _stripe_error(e)
        return jsonify({
            "id": intent.id,
            "status": intent.status,
            "amount": intent.amount,
            "currency": intent.currency,
            "metadata": dict(intent.metadata or {}),
            "created": intent.created,
        })

    @app.post("/api/payments/refund")
    @requires_auth()
    def refund_payment():
        body = json_body()
        transaction_id = body.get("transaction_id")
        amount = body.get("amount")
        if not transaction_id:
            return jsonify({"error": "Transaction ID is required"}), 400
        if amount is not None and (not isinstance(amount, int) or amount <= 0):
            return jsonify({"error": "amount must be a positive integer"}), 400
        api_key = _api_key()
        user = optional_user() or {}
        try:
            if user.get("role") not in STAFF_ROLES:
                intent = stripe.PaymentIntent.retrieve(transaction_id, api_key=api_key)
                if (intent.metadata or {}).get("user_id") != current_user_id():
                    return jsonify({"error": "Forbidden"}), 403
            params = {
                "payment_intent": transaction_id,
                "reason": normalize_refund_reason(body.get("reason")),
            }
            if amount:
                params["amount"] = amount
            refund = stripe.Refund.create(api_key=api_key, **params)
        except stripe.StripeError as e:
            return _stripe_error(e)
        if not amount:
            db.execute(
                "UPDATE orders SET payment_status = 'refunded', updated_at = NOW() WHERE transaction_id = %s",
                (transaction_id,),
            )
        app.logger.info("refund %s created for %s by user=%s", refund.id, transaction_id, current_user_id())
        return jsonify({
            "success": True,
            "refund_id": refund.id,
            "status": refund.status,
            "amount": refund.amount,
        })
