import asyncio
from decimal import Decimal

import httpx
import pytest

from server.services import currency_service
from server.services.errors import ConversionError


def rate_transport(rates=None, status_code=200, payload=None, seen=None):
    def handler(request):
        if seen is not None:
            seen.append(str(request.url))
        if payload is not None:
            return httpx.Response(status_code, content=payload)
        return httpx.Response(status_code, json={"base": "USD", "rates": rates or {}})

    return httpx.MockTransport(handler)


def test_same_currency_is_identity():
    conversion = asyncio.run(currency_service.convert(100, "usd", "USD"))

    assert conversion.amount == Decimal("100")
    assert conversion.currency == "USD"
    assert conversion.rate == Decimal(1)
    assert conversion.source == currency_service.RATE_IDENTITY
    assert not conversion.converted


def test_no_target_currency_is_identity():
    conversion = asyncio.run(currency_service.convert(Decimal("49.99"), "USD", None))

    assert conversion.amount == Decimal("49.99")
    assert conversion.currency == "USD"


def test_live_rate_is_used():
    seen = []
    transport = rate_transport({"NGN": 1600}, seen=seen)

    conversion = asyncio.run(currency_service.convert(100, "USD", "NGN", transport=transport))

    assert conversion.amount == Decimal("160000.00")
    assert conversion.currency == "NGN"
    assert conversion.rate == Decimal("1600")
    assert conversion.source == currency_service.RATE_LIVE
    assert not conversion.degraded
    assert conversion.original_amount == Decimal("100")
    assert conversion.original_currency == "USD"
    assert seen and seen[0].endswith("/USD")


def test_lookup_failure_falls_back():
    transport = rate_transport(status_code=503, payload=b"unavailable")

    conversion = asyncio.run(currency_service.convert(100, "USD", "NGN", transport=transport))

    assert conversion.amount == Decimal("165000.00")
    assert conversion.rate == Decimal("1650")
    assert conversion.source == currency_service.RATE_FALLBACK
    assert conversion.degraded


def test_malformed_payload_falls_back():
    transport = rate_transport(payload=b"<html>not json</html>")

    conversion = asyncio.run(currency_service.convert(100, "USD", "NGN", transport=transport))

    assert conversion.degraded
    assert conversion.amount == Decimal("165000.00")


def test_missing_rate_falls_back():
    transport = rate_transport({"EUR": 0.9})

    conversion = asyncio.run(currency_service.convert(10, "USD", "NGN", transport=transport))

    assert conversion.degraded
    assert conversion.amount == Decimal("16500.00")


def test_network_error_falls_back():
    def handler(request):
        raise httpx.ConnectError("no route to host", request=request)

    conversion = asyncio.run(
        currency_service.convert(1, "USD", "NGN", transport=httpx.MockTransport(handler))
    )

    assert conversion.degraded
    assert conversion.amount == Decimal("1650.00")


def test_unsupported_pair_without_fallback_fails_loudly():
    transport = rate_transport(status_code=500, payload=b"")

    with pytest.raises(ConversionError):
        asyncio.run(currency_service.convert(100, "EUR", "GHS", transport=transport))


def test_live_rate_for_pair_without_fallback():
    transport = rate_transport({"GBP": 0.85})

    conversion = asyncio.run(currency_service.convert(20, "EUR", "GBP", transport=transport))

    assert conversion.amount == Decimal("17.00")
    assert conversion.source == currency_service.RATE_LIVE
