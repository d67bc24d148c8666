"""Card payments through Stripe (hosted Checkout or PaymentIntent)."""

import asyncio
import logging
from typing import Optional

import stripe

from server import settings
from server.models.payment import PaymentMethod
from server.processors.base import (
    ChargeRequest,
    ChargeResult,
    ProcessorAdapter,
    VerificationOutcome,
    register,
    to_minor_units,
)
from server.services.errors import ProcessorError

MODE_CHECKOUT = "checkout"
MODE_INTENT = "intent"

STRIPE_ID_PREFIXES = ("cs_", "pi_")


def _configure_stripe_or_raise():
    if not settings.STRIPE_SECRET_KEY:
        raise ProcessorError("Stripe is not configured")
    stripe.api_key = settings.STRIPE_SECRET_KEY
    stripe.api_version = settings.STRIPE_API_VERSION


def _metadata_value(obj, key: str) -> Optional[str]:
    try:
        return obj.metadata[key]
    except (AttributeError, KeyError, TypeError):
        return None


@register
class StripeAdapter(ProcessorAdapter):
    method = PaymentMethod.CARD
    default_currency = "USD"

    async def initiate(self, charge: ChargeRequest) -> ChargeResult:
        _configure_stripe_or_raise()
        mode = charge.mode or MODE_CHECKOUT
        metadata = {
            "payment_id": charge.payment_id,
            "course_id": charge.course_id,
            "student_id": charge.student_id,
            **{k: str(v) for k, v in charge.metadata.items()},
        }
        try:
            if mode == MODE_CHECKOUT:
                return await self._create_checkout(charge, metadata)
            if mode == MODE_INTENT:
                return await self._create_intent(charge, metadata)
        except stripe.StripeError as exc:
            logging.exception("Stripe %s creation failed for payment %s", mode, charge.payment_id)
            raise ProcessorError("Failed to initialize Stripe payment") from exc
        raise ProcessorError(f"Unknown Stripe mode: {mode}")

    async def _create_checkout(self, charge: ChargeRequest, metadata: dict) -> ChargeResult:
        session = await asyncio.to_thread(
            stripe.checkout.Session.create,
            customer_email=charge.email,
            line_items=[
                {
                    "price_data": {
                        "currency": charge.currency.lower(),
                        "product_data": {
                            "name": "Course Enrollment",
                            "description": "Payment for course enrollment",
                        },
                        "unit_amount": to_minor_units(charge.amount),
                    },
                    "quantity": 1,
                }
            ],
            mode="payment",
            success_url=charge.success_url,
            cancel_url=charge.cancel_url,
            client_reference_id=charge.payment_id,
            metadata=metadata,
            idempotency_key=f"checkout-{charge.payment_id}",
        )
        logging.info("Stripe checkout session %s created for payment %s", session.id, charge.payment_id)
        return ChargeResult(
            redirect_url=session.url,
            reference=session.id,
            correlation={"stripe_session_id": session.id},
        )

    async def _create_intent(self, charge: ChargeRequest, metadata: dict) -> ChargeResult:
        intent = await asyncio.to_thread(
            stripe.PaymentIntent.create,
            amount=to_minor_units(charge.amount),
            currency=charge.currency.lower(),
            description="Course Enrollment Payment",
            receipt_email=charge.email,
            metadata=metadata,
            idempotency_key=f"intent-{charge.payment_id}",
        )
        logging.info("Stripe payment intent %s created for payment %s", intent.id, charge.payment_id)
        return ChargeResult(
            client_secret=intent.client_secret,
            reference=intent.id,
            correlation={"stripe_payment_intent_id": intent.id},
        )

    def _candidates(self, payment, claim_token: Optional[str]):
        tokens = []
        if claim_token and claim_token.startswith(STRIPE_ID_PREFIXES):
            tokens.append(claim_token)
        for stored in (payment.stripe_session_id, payment.stripe_payment_intent_id):
            if stored and stored.startswith(STRIPE_ID_PREFIXES) and stored not in tokens:
                tokens.append(stored)
        return tokens

    async def verify(self, payment, claim_token: Optional[str] = None) -> VerificationOutcome:
        tokens = self._candidates(payment, claim_token)
        if not tokens:
            return VerificationOutcome(False, reason="no Stripe reference")
        try:
            _configure_stripe_or_raise()
        except ProcessorError as exc:
            logging.warning("Stripe verification failed for payment %s: %s", payment.id, exc)
            return VerificationOutcome(False, reason="processor error")

        # A claimed id that belongs to another payment falls through to the stored ones.
        for token in tokens:
            try:
                if token.startswith("cs_"):
                    outcome, obj = await self._verify_session(token)
                else:
                    outcome, obj = await self._verify_intent(token)
            except stripe.StripeError as exc:
                logging.warning("Stripe verification failed for payment %s: %s", payment.id, exc)
                return VerificationOutcome(False, reason="processor error")
            except (AttributeError, KeyError, TypeError):
                logging.exception("Malformed Stripe response for %s (payment %s)", token, payment.id)
                return VerificationOutcome(False, reason="malformed response")

            if _metadata_value(obj, "payment_id") == payment.id:
                return outcome
            logging.warning("Stripe object %s does not belong to payment %s", token, payment.id)
        return VerificationOutcome(False, reason="reference mismatch")

    async def _verify_session(self, session_id: str):
        session = await asyncio.to_thread(stripe.checkout.Session.retrieve, session_id)
        payment_status = getattr(session, "payment_status", None)
        intent = getattr(session, "payment_intent", None)
        intent_id = getattr(intent, "id", intent)
        correlation = {"stripe_session_id": session_id}
        if intent_id:
            correlation["stripe_payment_intent_id"] = intent_id
        outcome = VerificationOutcome(
            verified=payment_status == "paid",
            transaction_id=intent_id,
            correlation=correlation,
            reason=f"payment_status={payment_status}",
        )
        return outcome, session

    async def _verify_intent(self, intent_id: str):
        intent = await asyncio.to_thread(stripe.PaymentIntent.retrieve, intent_id)
        status = getattr(intent, "status", None)
        outcome = VerificationOutcome(
            verified=status == "succeeded",
            transaction_id=getattr(intent, "id", None) or intent_id,
            correlation={"stripe_payment_intent_id": intent_id},
            reason=f"status={status}",
        )
        return outcome, intent
