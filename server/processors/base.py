"""The capability every payment processor implements."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Optional, Type

from server.services.errors import ProcessorError


@dataclass
class ChargeRequest:
    payment_id: str
    student_id: str
    course_id: str
    amount: Decimal
    currency: str
    email: str
    success_url: str
    cancel_url: str
    mode: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ChargeResult:
    redirect_url: Optional[str] = None
    client_secret: Optional[str] = None
    reference: Optional[str] = None
    # Column name -> processor id, written back onto the Payment row
    correlation: Dict[str, str] = field(default_factory=dict)


@dataclass
class VerificationOutcome:
    verified: bool
    transaction_id: Optional[str] = None
    correlation: Dict[str, str] = field(default_factory=dict)
    reason: Optional[str] = None


def to_minor_units(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).to_integral_value(rounding=ROUND_HALF_UP))


class ProcessorAdapter(ABC):
    method: str
    # Currency the processor settles in; None means "charge as requested".
    settlement_currency: Optional[str] = None
    default_currency: str = "USD"

    @abstractmethod
    async def initiate(self, charge: ChargeRequest) -> ChargeResult:
        """Start a charge. Raises :class:`ProcessorError` on any failure."""

    @abstractmethod
    async def verify(self, payment, claim_token: Optional[str] = None) -> VerificationOutcome:
        """Ask the processor directly whether ``payment`` was paid.

        ``claim_token`` is only a lookup hint from the client. Implementations
        return ``verified=False`` rather than raising on processor failures.
        """


_REGISTRY: Dict[str, Type[ProcessorAdapter]] = {}


def register(adapter_cls: Type[ProcessorAdapter]) -> Type[ProcessorAdapter]:
    _REGISTRY[adapter_cls.method] = adapter_cls
    return adapter_cls


def get_adapter(method: str) -> ProcessorAdapter:
    try:
        return _REGISTRY[method]()
    except KeyError:
        raise ProcessorError(f"Unsupported payment method: {method}") from None
