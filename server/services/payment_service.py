"""Creating and confirming course payments.

``initiate_payment`` records the attempt and hands it to a processor;
``verify_payment`` asks that processor whether it was paid and, if so,
activates the enrollment. Neither trusts anything the client claims about
the outcome of a charge.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from server import settings
from server.models.payment import Payment, PaymentMethod, PaymentStatus
from server.processors import paystack_adapter, stripe_adapter  # noqa: F401  (registers adapters)
from server.processors.base import ChargeRequest, ProcessorAdapter, VerificationOutcome, get_adapter
from server.services import currency_service, payment_store
from server.services.currency_service import Conversion
from server.services.enrollment_service import activate_enrollment
from server.services.errors import InvalidRequest, PersistenceError, ProcessorError, Unauthenticated


@dataclass
class BuyerInfo:
    full_name: str
    email: str
    phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = None
    postal_code: Optional[str] = None


@dataclass
class PaymentRequest:
    course_id: str
    amount: Decimal
    buyer: BuyerInfo
    currency: Optional[str] = None


@dataclass
class InitiationResult:
    payment_id: str
    conversion: Conversion
    redirect_url: Optional[str] = None
    client_secret: Optional[str] = None
    reference: Optional[str] = None


@dataclass
class VerificationResult:
    verified: bool
    payment_id: str
    enrollment_id: Optional[str] = None


def _require_student(student_id: Optional[str]) -> str:
    if not student_id:
        raise Unauthenticated()
    return student_id


def _validate(request: PaymentRequest) -> Decimal:
    if request is None or not request.course_id or request.buyer is None:
        raise InvalidRequest()
    if not request.buyer.full_name or not request.buyer.email:
        raise InvalidRequest()
    try:
        amount = Decimal(str(request.amount))
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidRequest("Invalid amount") from None
    if not amount.is_finite() or amount <= 0:
        raise InvalidRequest("Invalid amount")
    return amount


def _callback_urls(base: str, payment_id: str, with_session: bool):
    base = base.rstrip("/")
    success = f"{base}/payment-success?"
    if with_session:
        success += "session_id={CHECKOUT_SESSION_ID}&"
    success += f"payment_id={payment_id}"
    cancel = f"{base}/payment-cancelled?payment_id={payment_id}"
    return success, cancel


async def initiate_payment(
    db: AsyncSession,
    student_id: Optional[str],
    request: PaymentRequest,
    method: str,
    mode: Optional[str] = None,
    callback_base: Optional[str] = None,
    adapter: Optional[ProcessorAdapter] = None,
) -> InitiationResult:
    student_id = _require_student(student_id)
    amount = _validate(request)
    adapter = adapter or get_adapter(method)

    currency = (request.currency or adapter.default_currency).upper()
    conversion = await currency_service.convert(amount, currency, adapter.settlement_currency)

    buyer = request.buyer
    payment = await payment_store.create_payment(
        db,
        student_id=student_id,
        course_id=request.course_id,
        full_name=buyer.full_name,
        email=buyer.email,
        phone=buyer.phone,
        address=buyer.address,
        city=buyer.city,
        state=buyer.state,
        country=buyer.country,
        postal_code=buyer.postal_code,
        payment_method=adapter.method,
        amount=conversion.amount,
        currency=conversion.currency,
        original_amount=conversion.original_amount,
        original_currency=conversion.original_currency,
        exchange_rate=conversion.rate,
        rate_source=conversion.source,
    )
    logging.info(
        "Payment %s created: student=%s course=%s %s %s via %s",
        payment.id,
        student_id,
        request.course_id,
        conversion.amount,
        conversion.currency,
        adapter.method,
    )

    success_url, cancel_url = _callback_urls(
        callback_base or settings.PAYMENT_RETURN_URL,
        payment.id,
        with_session=adapter.method == PaymentMethod.CARD and mode != stripe_adapter.MODE_INTENT,
    )
    charge = ChargeRequest(
        payment_id=payment.id,
        student_id=student_id,
        course_id=request.course_id,
        amount=conversion.amount,
        currency=conversion.currency,
        email=buyer.email,
        success_url=success_url,
        cancel_url=cancel_url,
        mode=mode,
        metadata={
            "full_name": buyer.full_name,
            "phone": buyer.phone or "",
            "original_amount": str(conversion.original_amount),
            "original_currency": conversion.original_currency,
            "exchange_rate": str(conversion.rate),
            "rate_source": conversion.source,
        },
    )

    # The pending row is already committed; a failure here leaves it pending.
    try:
        result = await asyncio.wait_for(
            adapter.initiate(charge), timeout=settings.PROCESSOR_TIMEOUT_SECONDS
        )
    except asyncio.TimeoutError:
        logging.error("Processor initiate timed out for payment %s", payment.id)
        raise ProcessorError("Payment processor timed out") from None
    except ProcessorError:
        logging.error("Processor initiate failed for payment %s; left pending", payment.id)
        raise

    try:
        await payment_store.attach_processor_refs(db, payment.id, result.correlation)
    except PersistenceError:
        logging.error(
            "Payment %s was accepted by %s but its refs %s were not saved; needs reconciliation",
            payment.id,
            adapter.method,
            result.correlation,
        )
        raise

    return InitiationResult(
        payment_id=payment.id,
        conversion=conversion,
        redirect_url=result.redirect_url,
        client_secret=result.client_secret,
        reference=result.reference,
    )


async def _ask_processor(
    adapter: ProcessorAdapter, payment: Payment, claim_token: Optional[str]
) -> VerificationOutcome:
    """Processor errors and timeouts count as a negative answer."""
    try:
        return await asyncio.wait_for(
            adapter.verify(payment, claim_token), timeout=settings.PROCESSOR_TIMEOUT_SECONDS
        )
    except asyncio.TimeoutError:
        logging.warning("Processor verify timed out for payment %s", payment.id)
        return VerificationOutcome(False, reason="timeout")
    except ProcessorError as exc:
        logging.warning("Processor verify failed for payment %s: %s", payment.id, exc)
        return VerificationOutcome(False, reason="processor error")


async def _activate_and_link(db: AsyncSession, payment: Payment) -> str:
    enrollment_id = await activate_enrollment(db, payment.student_id, payment.course_id)
    await payment_store.link_enrollment(db, payment.id, enrollment_id)
    return enrollment_id


async def verify_payment(
    db: AsyncSession,
    student_id: Optional[str],
    payment_id: Optional[str],
    claim_token: Optional[str] = None,
    adapter: Optional[ProcessorAdapter] = None,
) -> VerificationResult:
    student_id = _require_student(student_id)
    if not payment_id:
        raise InvalidRequest("Payment ID is required")

    payment = await payment_store.get_owned_payment(db, payment_id, student_id)

    if payment.status == PaymentStatus.FAILED:
        return VerificationResult(False, payment.id)

    if payment.status == PaymentStatus.COMPLETED:
        # Already paid: only make sure the enrollment exists and is linked.
        enrollment_id = await _activate_and_link(db, payment)
        await db.commit()
        return VerificationResult(True, payment.id, enrollment_id)

    adapter = adapter or get_adapter(payment.payment_method)
    # Don't hold a transaction open across the processor round trip.
    await db.commit()
    outcome = await _ask_processor(adapter, payment, claim_token)

    if not outcome.verified:
        logging.info("Payment %s not verified (%s); marking failed", payment.id, outcome.reason)
        if not await payment_store.mark_failed(db, payment.id):
            await db.rollback()
            return await _settled_elsewhere(db, payment)
        await db.commit()
        return VerificationResult(False, payment.id)

    learned = {k: v for k, v in outcome.correlation.items() if getattr(payment, k, None) is None}
    if not await payment_store.mark_completed(db, payment.id, datetime.utcnow(), learned):
        await db.rollback()
        return await _settled_elsewhere(db, payment)

    enrollment_id = await _activate_and_link(db, payment)
    await db.commit()
    logging.info(
        "Payment %s completed (txn %s); enrollment %s",
        payment.id,
        outcome.transaction_id,
        enrollment_id,
    )
    return VerificationResult(True, payment.id, enrollment_id)


async def _settled_elsewhere(db: AsyncSession, payment: Payment) -> VerificationResult:
    """A concurrent verify moved the payment out of pending first; report its result."""
    payment = await payment_store.reload(db, payment)
    if payment.status == PaymentStatus.COMPLETED:
        enrollment_id = await _activate_and_link(db, payment)
        await db.commit()
        return VerificationResult(True, payment.id, enrollment_id)
    return VerificationResult(False, payment.id)
