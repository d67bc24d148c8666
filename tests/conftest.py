import asyncio
import sys
from pathlib import Path

import pytest
from sqlalchemy.pool import NullPool

sys.path.append(str(Path(__file__).resolve().parents[1]))

from server.db.base_class import Base
from server.db.session import build_engine, build_sessionmaker
from server.models import enrollment, payment  # noqa: F401
from server.models.payment import PaymentMethod
from server.processors.base import ChargeResult, ProcessorAdapter, VerificationOutcome
from server.services.errors import ProcessorError


def setup_test_db(path):
    # File-backed so that every session gets its own connection, like production.
    engine = build_engine(f"sqlite+aiosqlite:///{path}", poolclass=NullPool)

    async def init_models():
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(init_models())
    return engine, build_sessionmaker(engine)


@pytest.fixture
def session_factory(tmp_path):
    engine, factory = setup_test_db(tmp_path / "payments.db")
    yield factory
    asyncio.run(engine.dispose())


class FakeAdapter(ProcessorAdapter):
    """In-memory processor used by service and router tests."""

    method = PaymentMethod.CARD

    def __init__(
        self,
        verified=True,
        fail_initiate=False,
        fail_verify=False,
        settlement_currency=None,
        default_currency="USD",
        method=None,
        delay=0,
    ):
        self.verified = verified
        self.fail_initiate = fail_initiate
        self.fail_verify = fail_verify
        self.settlement_currency = settlement_currency
        self.default_currency = default_currency
        if method:
            self.method = method
        self.delay = delay
        self.charges = []
        self.verify_calls = []

    async def initiate(self, charge):
        self.charges.append(charge)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_initiate:
            raise ProcessorError("Failed to initialize payment")
        session_id = f"cs_test_{charge.payment_id}"
        return ChargeResult(
            redirect_url=f"https://checkout.example/{session_id}",
            reference=session_id,
            correlation={"stripe_session_id": session_id},
        )

    async def verify(self, payment, claim_token=None):
        self.verify_calls.append((payment.id, claim_token))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_verify:
            raise ProcessorError("processor unavailable")
        return VerificationOutcome(
            verified=self.verified,
            transaction_id="pi_test_1",
            correlation={"stripe_payment_intent_id": "pi_test_1"},
        )


@pytest.fixture
def fake_adapter():
    return FakeAdapter()
