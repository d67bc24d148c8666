"""Mobile money / bank payments through Paystack's transaction API."""

import logging
from typing import Optional

import httpx

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

REFERENCE_PREFIX = "PAY-"


def reference_for(payment_id: str) -> str:
    return f"{REFERENCE_PREFIX}{payment_id}"


def _json_or_empty(resp: httpx.Response) -> dict:
    try:
        data = resp.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


@register
class PaystackAdapter(ProcessorAdapter):
    method = PaymentMethod.MOBILE_BANK
    settlement_currency = "NGN"
    default_currency = "NGN"

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        if not settings.PAYSTACK_SECRET_KEY:
            raise ProcessorError("Paystack is not configured")
        return httpx.AsyncClient(
            base_url=settings.PAYSTACK_BASE_URL,
            headers={"Authorization": f"Bearer {settings.PAYSTACK_SECRET_KEY}"},
            timeout=settings.PROCESSOR_TIMEOUT_SECONDS,
            transport=self.transport,
        )

    async def initiate(self, charge: ChargeRequest) -> ChargeResult:
        body = {
            "email": charge.email,
            # Paystack amounts are in kobo/cents
            "amount": to_minor_units(charge.amount),
            "currency": charge.currency,
            "reference": reference_for(charge.payment_id),
            "callback_url": charge.success_url,
            "metadata": {
                "payment_id": charge.payment_id,
                "course_id": charge.course_id,
                "student_id": charge.student_id,
                **charge.metadata,
            },
        }
        try:
            async with self._client() as client:
                resp = await client.post("/transaction/initialize", json=body)
        except httpx.HTTPError as exc:
            logging.exception("Paystack initialize failed for payment %s", charge.payment_id)
            raise ProcessorError("Paystack is unreachable") from exc

        payload = _json_or_empty(resp)
        data = payload.get("data")
        if not isinstance(data, dict):
            data = {}
        if resp.is_error or not payload.get("status") or not data.get("authorization_url"):
            logging.error(
                "Paystack initialize rejected payment %s: HTTP %s %s",
                charge.payment_id,
                resp.status_code,
                payload.get("message"),
            )
            raise ProcessorError("Failed to initialize Paystack payment")

        logging.info("Paystack transaction %s initialized", data.get("reference"))
        return ChargeResult(
            redirect_url=data["authorization_url"],
            reference=data.get("reference"),
            correlation={
                "paystack_reference": data.get("reference"),
                "paystack_access_code": data.get("access_code"),
            },
        )

    async def verify(self, payment, claim_token: Optional[str] = None) -> VerificationOutcome:
        # Our references are derived from the payment id, so the client's
        # hint is never needed to find the transaction.
        reference = reference_for(payment.id)
        if claim_token and claim_token != reference:
            logging.warning(
                "Ignoring Paystack reference %s sent for payment %s", claim_token, payment.id
            )

        try:
            async with self._client() as client:
                resp = await client.get(f"/transaction/verify/{reference}")
        except (httpx.HTTPError, ProcessorError) as exc:
            logging.warning("Paystack verify failed for payment %s: %s", payment.id, exc)
            return VerificationOutcome(False, reason="processor error")

        payload = _json_or_empty(resp)
        data = payload.get("data")
        if resp.is_error or not payload.get("status") or not isinstance(data, dict):
            logging.warning(
                "Paystack verify for %s returned HTTP %s %s",
                reference,
                resp.status_code,
                payload.get("message"),
            )
            return VerificationOutcome(False, reason="processor error")

        transaction_id = data.get("id")
        return VerificationOutcome(
            verified=data.get("status") == "success",
            transaction_id=str(transaction_id) if transaction_id is not None else None,
            correlation={"paystack_reference": reference},
            reason=f"status={data.get('status')}",
        )
