import logging
from contextlib import asynccontextmanager
from typing import Any, cast

from fastapi import FastAPI
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from billing_sync.api import webhooks
from billing_sync.core.config import settings
from billing_sync.core.errors import init_sentry
from billing_sync.db import create_db_and_tables
from billing_sync.middleware.context import RequestContextMiddleware

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("=" * 50)
    logger.info(f"{settings.PROJECT_NAME} API Starting ({settings.ENVIRONMENT})")
    logger.info(f"Webhook secret: {'configured' if settings.STRIPE_WEBHOOK_SECRET else 'MISSING, all deliveries will be rejected'}")
    logger.info("=" * 50)

    init_sentry(
        dsn=settings.SENTRY_DSN,
        environment=settings.ENVIRONMENT,
        traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
        release=settings.RELEASE or None,
    )

    if settings.AUTO_CREATE_TABLES:
        create_db_and_tables()

    yield


app = FastAPI(title=settings.PROJECT_NAME, openapi_url=f"{settings.API_V1_STR}/openapi.json", lifespan=lifespan)

app.add_middleware(cast(Any, RequestContextMiddleware))

# Client IPs for the webhook rate limit come from X-Forwarded-For, but only when set by a trusted proxy
app.add_middleware(
    cast(Any, ProxyHeadersMiddleware),
    trusted_hosts=[host.strip() for host in settings.FORWARDED_ALLOW_IPS.split(",") if host.strip()],
)

app.include_router(webhooks.router, prefix=settings.API_V1_STR, tags=["webhooks"])


@app.get("/health")
def health():
    return {"status": "ok"}
