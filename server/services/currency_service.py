"""Currency conversion with a live rate lookup and a hardcoded fallback."""

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Optional

import httpx

from server import settings
from server.services.errors import ConversionDegraded, ConversionError

CENT = Decimal("0.01")

RATE_IDENTITY = "identity"
RATE_LIVE = "live"
RATE_FALLBACK = "fallback"


@dataclass(frozen=True)
class Conversion:
    amount: Decimal
    currency: str
    rate: Decimal
    source: str
    original_amount: Decimal
    original_currency: str

    @property
    def degraded(self) -> bool:
        return self.source == RATE_FALLBACK

    @property
    def converted(self) -> bool:
        return self.source != RATE_IDENTITY


async def fetch_rate(
    from_currency: str,
    to_currency: str,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Decimal:
    """Look up ``from_currency -> to_currency`` from the public rate table.

    Raises :class:`ConversionDegraded` on any transport or payload problem.
    """
    url = settings.EXCHANGE_RATE_API_URL.format(base=from_currency)
    try:
        async with httpx.AsyncClient(
            timeout=settings.PROCESSOR_TIMEOUT_SECONDS, transport=transport
        ) as client:
            resp = await client.get(url)
        resp.raise_for_status()
        rates = resp.json()["rates"]
        rate = Decimal(str(rates[to_currency]))
    except (httpx.HTTPError, ValueError, KeyError, TypeError, InvalidOperation) as exc:
        raise ConversionDegraded(f"{from_currency}->{to_currency}: {exc!r}") from exc

    if not rate.is_finite() or rate <= 0:
        raise ConversionDegraded(f"{from_currency}->{to_currency}: bad rate {rate}")
    return rate


async def convert(
    amount,
    from_currency: str,
    to_currency: Optional[str],
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Conversion:
    """Convert ``amount`` into ``to_currency``.

    Same currency (or no target) is a no-op at rate 1. When the live lookup
    fails, the fallback table is used for the pairs it covers; any other pair
    raises :class:`ConversionError`.
    """
    amount = Decimal(str(amount))
    source_ccy = from_currency.upper()
    target_ccy = (to_currency or source_ccy).upper()

    if source_ccy == target_ccy:
        return Conversion(amount, source_ccy, Decimal(1), RATE_IDENTITY, amount, source_ccy)

    try:
        rate = await fetch_rate(source_ccy, target_ccy, transport=transport)
        source = RATE_LIVE
    except ConversionDegraded as exc:
        rate = settings.FALLBACK_RATES.get((source_ccy, target_ccy))
        if rate is None:
            logging.error(
                "No exchange rate for %s->%s and no fallback configured (%s)",
                source_ccy,
                target_ccy,
                exc,
            )
            raise ConversionError() from exc
        logging.warning(
            "Live rate lookup failed (%s); using fallback rate %s for %s->%s",
            exc,
            rate,
            source_ccy,
            target_ccy,
        )
        source = RATE_FALLBACK

    converted = (amount * rate).quantize(CENT, rounding=ROUND_HALF_UP)
    logging.info(
        "Converted %s %s -> %s %s at %s (%s rate)",
        amount,
        source_ccy,
        converted,
        target_ccy,
        rate,
        source,
    )
    return Conversion(converted, target_ccy, rate, source, amount, source_ccy)
