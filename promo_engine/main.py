import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from dotenv import load_dotenv

if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from promo_engine import __version__
from promo_engine.core.config import settings, validate_config
from promo_engine.core.database import create_all_tables
from promo_engine.core.logging import configure_logging
from promo_engine.core.middleware.metrics import MetricsMiddleware
from promo_engine.core.middleware.ratelimit import RateLimitMiddleware
from promo_engine.core.middleware.request_id import RequestIdMiddleware
from promo_engine.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from promo_engine.core.ratelimit import build_rate_limit_config
from promo_engine.api import subscriptions, coupons, admin, health
from promo_engine.features.catalog.seed import seed_catalog


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("promo_engine")
    logger.info("Starting promo engine...")
    validate_config(strict=settings.CONFIG_STRICT)
    create_all_tables()
    if settings.SEED_CATALOG:
        seed_catalog()
    try:
        yield
    finally:
        logging.getLogger("promo_engine").info("Stopping promo engine...")


def create_app() -> FastAPI:
    configure_logging(settings.ENV)

    app = FastAPI(title="Promo Engine", version=__version__, lifespan=lifespan)

    # Last added runs first: request id wraps everything else
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(RateLimitMiddleware, config=build_rate_limit_config(settings))
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in settings.CORS_ALLOWED_ORIGINS.split(",") if o.strip()],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestIdMiddleware)

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(HTTPException, http_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(subscriptions.router)
    app.include_router(coupons.router)
    app.include_router(admin.router)
    app.include_router(health.root_router)
    return app


app = create_app()
