# server/api/payment_router.py

import logging
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from server import settings
from server.api.auth import get_current_student_id
from server.db.session import get_db
from server.models.payment import PaymentMethod
from server.processors.stripe_adapter import MODE_CHECKOUT, MODE_INTENT
from server.services import payment_service
from server.services.errors import InvalidRequest, PaymentError

router = APIRouter()


# ---------- Request bodies (camelCase, as the web client sends them) ----------
class _Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class PersonalInfo(_Body):
    full_name: Optional[str] = Field(None, alias="fullName")
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = None
    postal_code: Optional[str] = Field(None, alias="postalCode")


class CreatePaymentBody(_Body):
    # Everything optional so missing fields reach the service as InvalidRequest.
    course_id: Optional[str] = Field(None, alias="courseId")
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    personal_info: Optional[PersonalInfo] = Field(None, alias="personalInfo")

    def to_request(self) -> payment_service.PaymentRequest:
        buyer = None
        if self.personal_info is not None:
            buyer = payment_service.BuyerInfo(
                **self.personal_info.model_dump(by_alias=False)
            )
        return payment_service.PaymentRequest(
            course_id=self.course_id,
            amount=self.amount,
            currency=self.currency,
            buyer=buyer,
        )


class VerifyPaymentBody(_Body):
    payment_id: Optional[str] = Field(None, alias="paymentId")
    stripe_session_id: Optional[str] = Field(None, alias="stripeSessionId")
    paystack_reference: Optional[str] = Field(None, alias="paystackReference")


def _error(exc: PaymentError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


def _unexpected(action: str) -> JSONResponse:
    logging.exception("Unexpected error while trying to %s", action)
    return JSONResponse(status_code=500, content={"error": "An error occurred"})


async def invalid_body_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed or mistyped bodies get the same 400 as missing fields."""
    logging.info("Rejected %s body: %s", request.url.path, exc.errors())
    return _error(InvalidRequest())


async def _initiate(request: Request, body: CreatePaymentBody, student_id, db, method, mode=None):
    return await payment_service.initiate_payment(
        db,
        student_id,
        body.to_request(),
        method,
        mode=mode,
        callback_base=request.headers.get("origin"),
    )


# ---------- CREATING PAYMENTS ----------
@router.post("/create_stripe_checkout")
async def create_stripe_checkout(
    request: Request,
    body: CreatePaymentBody,
    student_id: Optional[str] = Depends(get_current_student_id),
    db: AsyncSession = Depends(get_db),
):
    """Start a hosted Stripe Checkout and return the page to redirect to."""
    try:
        result = await _initiate(request, body, student_id, db, PaymentMethod.CARD, MODE_CHECKOUT)
    except PaymentError as exc:
        return _error(exc)
    except Exception:
        return _unexpected("create a Stripe checkout")
    return {"url": result.redirect_url, "paymentId": result.payment_id}


@router.post("/create_stripe_payment_intent")
async def create_stripe_payment_intent(
    request: Request,
    body: CreatePaymentBody,
    student_id: Optional[str] = Depends(get_current_student_id),
    db: AsyncSession = Depends(get_db),
):
    """Create a PaymentIntent for an embedded card form."""
    try:
        result = await _initiate(request, body, student_id, db, PaymentMethod.CARD, MODE_INTENT)
    except PaymentError as exc:
        return _error(exc)
    except Exception:
        return _unexpected("create a Stripe payment intent")
    return {"clientSecret": result.client_secret, "paymentId": result.payment_id}


@router.post("/create_paystack_payment")
async def create_paystack_payment(
    request: Request,
    body: CreatePaymentBody,
    student_id: Optional[str] = Depends(get_current_student_id),
    db: AsyncSession = Depends(get_db),
):
    """Initialize a Paystack transaction, converting to NGN when needed."""
    try:
        result = await _initiate(request, body, student_id, db, PaymentMethod.MOBILE_BANK)
    except PaymentError as exc:
        return _error(exc)
    except Exception:
        return _unexpected("create a Paystack payment")
    conversion = result.conversion
    return {
        "url": result.redirect_url,
        "paymentId": result.payment_id,
        "reference": result.reference,
        "convertedAmount": float(conversion.amount),
        "convertedCurrency": conversion.currency,
        "exchangeRate": float(conversion.rate),
        "conversionFallback": conversion.degraded,
    }


# ---------- VERIFICATION ----------
@router.post("/verify_payment")
async def verify_payment(
    body: VerifyPaymentBody,
    student_id: Optional[str] = Depends(get_current_student_id),
    db: AsyncSession = Depends(get_db),
):
    """
    Re-check the payment with its processor and activate the enrollment.
    The session id / reference in the body only help find the transaction;
    the processor's own answer decides the outcome.
    """
    try:
        result = await payment_service.verify_payment(
            db,
            student_id,
            body.payment_id,
            claim_token=body.stripe_session_id or body.paystack_reference,
        )
    except PaymentError as exc:
        return _error(exc)
    except Exception:
        return _unexpected("verify a payment")

    if result.verified:
        return {"verified": True, "message": "Payment verified successfully"}
    return JSONResponse(
        status_code=400,
        content={"verified": False, "message": "Payment verification failed"},
    )


@router.get("/payment_config")
async def payment_config():
    """Public keys only; safe to hand to the browser."""
    return {
        "stripePublishableKey": settings.STRIPE_PUBLISHABLE_KEY,
        "paystackPublicKey": settings.PAYSTACK_PUBLIC_KEY,
    }
