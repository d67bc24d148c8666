"""Runtime configuration read from the environment (and ``.env``)."""

import os
from decimal import Decimal

from dotenv import load_dotenv

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./payments.db")

# Bearer tokens are issued by the auth provider; we only verify them.
AUTH_JWT_SECRET = os.getenv("AUTH_JWT_SECRET", "")
AUTH_JWT_ALGORITHM = os.getenv("AUTH_JWT_ALGORITHM", "HS256")
AUTH_JWT_AUDIENCE = os.getenv("AUTH_JWT_AUDIENCE", "authenticated")

STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY", "")
STRIPE_PUBLISHABLE_KEY = os.getenv("STRIPE_PUBLISHABLE_KEY", "")
STRIPE_API_VERSION = os.getenv("STRIPE_API_VERSION", "2025-08-27.basil")

PAYSTACK_SECRET_KEY = os.getenv("PAYSTACK_SECRET_KEY", "")
PAYSTACK_PUBLIC_KEY = os.getenv("PAYSTACK_PUBLIC_KEY", "")
PAYSTACK_BASE_URL = os.getenv("PAYSTACK_BASE_URL", "https://api.paystack.co")

EXCHANGE_RATE_API_URL = os.getenv(
    "EXCHANGE_RATE_API_URL", "https://api.exchangerate-api.com/v4/latest/{base}"
)

# Upper bound for any single call to a processor or the rate API.
PROCESSOR_TIMEOUT_SECONDS = float(os.getenv("PROCESSOR_TIMEOUT_SECONDS", "20"))

# Used for processor callbacks when the request carries no Origin header.
PAYMENT_RETURN_URL = os.getenv("PAYMENT_RETURN_URL", "http://localhost:8080")

CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "http://localhost:8080").split(",")
    if origin.strip()
]

# Only used when the live rate lookup fails.
FALLBACK_RATES = {
    ("USD", "NGN"): Decimal(os.getenv("FALLBACK_RATE_USD_NGN", "1650")),
}
