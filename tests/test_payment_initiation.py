import asyncio
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from conftest import FakeAdapter
from server import settings
from server.models.payment import Payment, PaymentMethod, PaymentStatus
from server.services import currency_service, payment_service, payment_store
from server.services.errors import (
    InvalidRequest,
    PersistenceError,
    ProcessorError,
    Unauthenticated,
)

STUDENT = "0b6f3c7e-0000-4000-8000-000000000001"
COURSE = "7c0d1a9e-0000-4000-8000-0000000000aa"


def make_request(**overrides):
    buyer = payment_service.BuyerInfo(
        full_name="Ada Obi",
        email="ada@example.com",
        phone="+2348000000000",
        address="1 Marina",
        city="Lagos",
        state="Lagos",
        country="Nigeria",
        postal_code="100001",
    )
    fields = {"course_id": COURSE, "amount": Decimal("100"), "buyer": buyer, "currency": "USD"}
    fields.update(overrides)
    return payment_service.PaymentRequest(**fields)


def initiate(session_factory, adapter, student_id=STUDENT, request=None, **kwargs):
    async def run():
        async with session_factory() as db:
            return await payment_service.initiate_payment(
                db,
                student_id,
                request or make_request(),
                adapter.method,
                adapter=adapter,
                callback_base="https://school.example",
                **kwargs,
            )

    return asyncio.run(run())


def load_payments(session_factory):
    async def run():
        async with session_factory() as db:
            return (await db.execute(select(Payment))).scalars().all()

    return asyncio.run(run())


def test_initiate_creates_pending_payment_with_processor_refs(session_factory):
    adapter = FakeAdapter()

    result = initiate(session_factory, adapter)

    payments = load_payments(session_factory)
    assert len(payments) == 1
    payment = payments[0]
    assert payment.id == result.payment_id
    assert payment.status == PaymentStatus.PENDING
    assert payment.student_id == STUDENT
    assert payment.course_id == COURSE
    assert payment.full_name == "Ada Obi"
    assert payment.postal_code == "100001"
    assert payment.payment_method == PaymentMethod.CARD
    assert payment.amount == Decimal("100")
    assert payment.currency == "USD"
    assert payment.rate_source == currency_service.RATE_IDENTITY
    assert payment.stripe_session_id == f"cs_test_{payment.id}"
    assert payment.completed_at is None
    assert payment.enrollment_id is None
    assert result.redirect_url.endswith(payment.stripe_session_id)


def test_callback_urls_point_back_to_payment(session_factory):
    adapter = FakeAdapter()

    result = initiate(session_factory, adapter)

    charge = adapter.charges[0]
    assert charge.payment_id == result.payment_id
    assert charge.success_url == (
        "https://school.example/payment-success?session_id={CHECKOUT_SESSION_ID}"
        f"&payment_id={result.payment_id}"
    )
    assert charge.cancel_url == f"https://school.example/payment-cancelled?payment_id={result.payment_id}"


def test_payment_row_exists_before_processor_failure(session_factory):
    adapter = FakeAdapter(fail_initiate=True)

    with pytest.raises(ProcessorError):
        initiate(session_factory, adapter)

    payments = load_payments(session_factory)
    assert len(payments) == 1
    assert payments[0].status == PaymentStatus.PENDING
    assert payments[0].stripe_session_id is None
    assert adapter.charges[0].payment_id == payments[0].id


def test_processor_timeout_leaves_payment_pending(session_factory, monkeypatch):
    monkeypatch.setattr(settings, "PROCESSOR_TIMEOUT_SECONDS", 0.05)
    adapter = FakeAdapter(delay=1)

    with pytest.raises(ProcessorError):
        initiate(session_factory, adapter)

    payments = load_payments(session_factory)
    assert [p.status for p in payments] == [PaymentStatus.PENDING]


def test_unauthenticated_caller_creates_nothing(session_factory):
    adapter = FakeAdapter()

    with pytest.raises(Unauthenticated):
        initiate(session_factory, adapter, student_id=None)

    assert load_payments(session_factory) == []
    assert adapter.charges == []


@pytest.mark.parametrize(
    "overrides",
    [
        {"course_id": None},
        {"amount": None},
        {"amount": Decimal("0")},
        {"amount": "-5"},
        {"buyer": None},
        {"buyer": payment_service.BuyerInfo(full_name="Ada Obi", email="")},
    ],
)
def test_invalid_request_creates_nothing(session_factory, overrides):
    adapter = FakeAdapter()

    with pytest.raises(InvalidRequest):
        initiate(session_factory, adapter, request=make_request(**overrides))

    assert load_payments(session_factory) == []
    assert adapter.charges == []


def test_mobile_bank_payment_is_converted_to_settlement_currency(session_factory, monkeypatch):
    async def fake_rate(from_currency, to_currency, transport=None):
        assert (from_currency, to_currency) == ("USD", "NGN")
        return Decimal("1600")

    monkeypatch.setattr(currency_service, "fetch_rate", fake_rate)
    adapter = FakeAdapter(
        method=PaymentMethod.MOBILE_BANK, settlement_currency="NGN", default_currency="NGN"
    )

    result = initiate(session_factory, adapter)

    assert result.conversion.amount == Decimal("160000.00")
    assert not result.conversion.degraded

    payment = load_payments(session_factory)[0]
    assert payment.payment_method == PaymentMethod.MOBILE_BANK
    assert payment.amount == Decimal("160000.00")
    assert payment.currency == "NGN"
    assert payment.original_amount == Decimal("100")
    assert payment.original_currency == "USD"
    assert payment.exchange_rate == Decimal("1600")
    assert payment.rate_source == currency_service.RATE_LIVE

    charge = adapter.charges[0]
    assert charge.amount == Decimal("160000.00")
    assert charge.currency == "NGN"
    assert charge.metadata["exchange_rate"] == "1600"
    assert charge.metadata["rate_source"] == "live"
    assert charge.metadata["original_amount"] == "100"


def test_conversion_fallback_is_recorded(session_factory, monkeypatch):
    async def broken_rate(from_currency, to_currency, transport=None):
        raise currency_service.ConversionDegraded("rate api down")

    monkeypatch.setattr(currency_service, "fetch_rate", broken_rate)
    adapter = FakeAdapter(method=PaymentMethod.MOBILE_BANK, settlement_currency="NGN")

    result = initiate(session_factory, adapter)

    assert result.conversion.degraded
    payment = load_payments(session_factory)[0]
    assert payment.amount == Decimal("165000.00")
    assert payment.rate_source == currency_service.RATE_FALLBACK
    assert adapter.charges[0].metadata["rate_source"] == "fallback"


def test_default_currency_comes_from_adapter(session_factory):
    adapter = FakeAdapter(
        method=PaymentMethod.MOBILE_BANK, settlement_currency="NGN", default_currency="NGN"
    )

    initiate(session_factory, adapter, request=make_request(currency=None, amount=Decimal("5000")))

    payment = load_payments(session_factory)[0]
    assert payment.currency == "NGN"
    assert payment.amount == Decimal("5000")
    assert payment.rate_source == currency_service.RATE_IDENTITY


def test_failed_write_back_of_refs_is_surfaced(session_factory, monkeypatch):
    async def broken_attach(db, payment_id, refs):
        raise PersistenceError()

    monkeypatch.setattr(payment_store, "attach_processor_refs", broken_attach)
    adapter = FakeAdapter()

    with pytest.raises(PersistenceError):
        initiate(session_factory, adapter)

    payments = load_payments(session_factory)
    assert len(payments) == 1
    assert payments[0].status == PaymentStatus.PENDING
    assert payments[0].stripe_session_id is None


def test_each_attempt_gets_its_own_payment(session_factory):
    adapter = FakeAdapter()

    first = initiate(session_factory, adapter)
    second = initiate(session_factory, adapter)

    assert first.payment_id != second.payment_id

    async def count():
        async with session_factory() as db:
            return (await db.execute(select(func.count(Payment.id)))).scalar_one()

    assert asyncio.run(count()) == 2
