# services/webhook_service.py
import hashlib
import hmac
import json
import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

from servicepay.core.errors import NotFoundError, PaymentValidationError, WebhookSignatureError
from servicepay.models.payment_model import Payment, PaymentMethod, PaymentStatus
from servicepay.services.lifecycle import PaymentLifecycleStore
from servicepay.services.nowpayments import NOWPAYMENTS_STATUS_MAP
from servicepay.services.paystack import validate_webhook_signature
from servicepay.services.quote import CENT

logger = logging.getLogger("servicepay.webhooks")


def nowpayments_signature(data: Dict[str, Any], secret: str) -> str:
    """IPN signatures cover the body re-serialized with sorted keys."""
    canonical = json.dumps(data, sort_keys=True, separators=(",", ":"))
    return hmac.new(secret.encode("utf-8"), canonical.encode("utf-8"), hashlib.sha512).hexdigest()

def _parse(payload: bytes) -> Dict[str, Any]:
    try:
        data = json.loads(payload)
    except ValueError as e:
        raise PaymentValidationError("Webhook body is not valid JSON") from e
    if not isinstance(data, dict):
        raise PaymentValidationError("Webhook body must be a JSON object")
    return data

class WebhookService:
    """Gateway and crypto-processor callbacks, applied through the lifecycle store."""

    def __init__(
        self,
        store: PaymentLifecycleStore,
        *,
        paystack_secret: Optional[str],
        nowpayments_secret: Optional[str] = None,
        require_secret: bool = True,
        auto_confirm: bool = False,
    ):
        self.store = store
        self.paystack_secret = paystack_secret
        self.nowpayments_secret = nowpayments_secret
        self.require_secret = require_secret
        self.auto_confirm = auto_confirm

    def _check_secret(self, source: str, secret: Optional[str]) -> bool:
        """False means verification is skipped (only when explicitly allowed)."""
        if secret:
            return True
        if self.require_secret:
            logger.error(f"🚫 {source} webhook rejected: no signing secret configured")
            raise WebhookSignatureError(f"{source} webhooks are not configured")
        logger.warning(f"⚠️ {source} webhook accepted WITHOUT signature verification")
        return False

    # --------------------------------------------------------------
    # Paystack
    # --------------------------------------------------------------
    async def handle_paystack(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        if self._check_secret("Paystack", self.paystack_secret):
            if not validate_webhook_signature(payload, signature, self.paystack_secret):
                logger.warning("🚫 Invalid Paystack webhook signature received")
                raise WebhookSignatureError("Invalid signature")

        data = _parse(payload)
        event = data.get("event")
        event_data = data.get("data") or {}
        reference = event_data.get("reference")
        if not reference:
            return {"status": "ignored", "reason": "missing_reference"}

        payment = await self.store.get_by_reference(reference)
        if payment is None:
            logger.warning(f"Webhook {event} for unknown reference {reference}")
            return {"status": "ignored", "reason": "unknown_reference"}

        changes: Dict[str, Any] = {}
        details: Dict[str, Any] = {"event": event, "gateway_id": event_data.get("id")}

        if event == "charge.success":
            observed = self._charge_success_status(payment, event_data, changes, details)
        elif event == "charge.failed":
            observed = PaymentStatus.FAILED
            changes["error_message"] = event_data.get("gateway_response") or "Charge failed at the gateway"
        else:
            logger.info(f"Webhook event {event} for {reference} not handled")
            return {"status": "ignored", "event": event}

        payment, applied = await self.store.apply_observed_status(
            payment.id,
            observed,
            actor="paystack",
            action=f"webhook_{event.replace('.', '_')}",
            changes=changes,
            details=details,
        )
        if applied:
            logger.info(f"✅ Webhook {event}: payment {payment.id} now {payment.payment_status.value}")
        elif observed in (PaymentStatus.SUCCESS, PaymentStatus.CONFIRMED) and payment.payment_status in (
            PaymentStatus.CANCELLED,
            PaymentStatus.FAILED,
        ):
            logger.error(
                f"💰 Charge succeeded for payment {payment.id} after it was {payment.payment_status.value}; "
                f"reconcile manually (reference {reference})"
            )
        return {
            "status": "success" if applied else "already_processed",
            "payment_status": payment.payment_status.value,
        }

    def _charge_success_status(
        self, payment: Payment, event_data: Dict[str, Any], changes: Dict[str, Any], details: Dict[str, Any]
    ) -> PaymentStatus:
        try:
            paid = Decimal(str(event_data.get("amount") or 0)) / 100
        except InvalidOperation:
            paid = Decimal("0")
        expected = Decimal(payment.charged_amount if payment.charged_amount is not None else payment.amount)
        details["paid_amount"] = str(paid)
        details["currency"] = event_data.get("currency")

        if paid + CENT < expected:
            # Underpaid: keep it out of the confirmable states until an operator looks
            note = f"Gateway reported {paid} {event_data.get('currency')}, expected {expected}"
            logger.warning(f"⚠️ Payment {payment.id}: {note}")
            changes["admin_notes"] = note
            return PaymentStatus.PROCESSING
        if self.auto_confirm:
            return PaymentStatus.CONFIRMED
        return PaymentStatus.SUCCESS

    # --------------------------------------------------------------
    # NOWPayments IPN
    # --------------------------------------------------------------
    async def handle_nowpayments(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        data = _parse(payload)
        if self._check_secret("NOWPayments", self.nowpayments_secret):
            expected = nowpayments_signature(data, self.nowpayments_secret)
            if not signature or not hmac.compare_digest(expected, signature):
                logger.warning("🚫 Invalid NOWPayments IPN signature received")
                raise WebhookSignatureError("Invalid signature")

        order_id = str(data.get("order_id") or "")
        if not order_id:
            raise PaymentValidationError("Missing order_id")
        payment = await self.store.get_by_reference(order_id)
        if payment is None and order_id.isdigit():
            try:
                payment = await self.store.get(int(order_id))
            except NotFoundError:
                payment = None
        if payment is None or payment.payment_method != PaymentMethod.CRYPTO:
            logger.warning(f"IPN for unknown crypto order {order_id}")
            return {"status": "ignored", "reason": "unknown_order"}

        ipn_status = str(data.get("payment_status") or "").lower()
        observed = NOWPAYMENTS_STATUS_MAP.get(ipn_status)
        if observed is None:
            return {"status": "ignored", "payment_status": ipn_status}

        note = f"NOWPayments IPN: {ipn_status}."
        if data.get("actually_paid"):
            note += f" Actually paid: {data.get('actually_paid')} {data.get('pay_currency', '')}".rstrip()
        changes: Dict[str, Any] = {"admin_notes": note}
        if data.get("payin_hash") and not payment.crypto_transaction_hash:
            changes["crypto_transaction_hash"] = data["payin_hash"]
        if observed == PaymentStatus.FAILED:
            changes["error_message"] = f"Crypto processor reported {ipn_status}"
        elif observed == PaymentStatus.CANCELLED:
            changes["error_message"] = "expired"

        payment, applied = await self.store.apply_observed_status(
            payment.id,
            observed,
            actor="nowpayments",
            action=f"ipn_{ipn_status}",
            changes=changes,
            details={"payment_id": data.get("payment_id"), "actually_paid": data.get("actually_paid")},
        )
        return {
            "status": "success" if applied else "already_processed",
            "payment_status": payment.payment_status.value,
        }
