import logging
from datetime import datetime

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from server import settings
from server.api import payment_router
from server.db.base_class import Base
from server.db.session import engine

# Register tables on Base.metadata
from server.models import enrollment, payment  # noqa: F401

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = FastAPI(title="Course Payments", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["authorization", "x-client-info", "apikey", "content-type"],
)

app.include_router(payment_router.router, prefix="/api")
app.add_exception_handler(RequestValidationError, payment_router.invalid_body_handler)


@app.on_event("startup")
async def on_startup():
    # Dev convenience for SQLite; real databases are migrated with Alembic.
    if engine.dialect.name == "sqlite":
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logging.info("SQLite tables ensured at %s", engine.url)


@app.get("/health")
async def health_check():
    return {"status": "ok", "timestamp": datetime.utcnow().isoformat()}
