import logging
import os

from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from dotenv import load_dotenv

# Load env from jobboard/.env
package_dir = os.path.dirname(os.path.abspath(__file__))
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv(dotenv_path=os.path.join(package_dir, ".env"))

from jobboard.core.config import settings, validate_config
from jobboard.core.database import create_all_tables
from jobboard.core.logging import configure_logging
from jobboard.core.middleware.request_id import RequestIdMiddleware
from jobboard.core.validation import validate_env
from jobboard.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from jobboard.api import health, subscription

configure_logging(settings.ENV)
validate_env()
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("jobboard")
    logger.info("Starting job board entitlement service...")
    if settings.DATABASE_URL or os.getenv("TEST_DATABASE_URL"):
        create_all_tables()
    try:
        yield
    finally:
        subscription.registry.clear()
        logger.info("Stopping job board entitlement service...")


app = FastAPI(title="Job board - Subscription entitlements", lifespan=lifespan)

app.add_middleware(RequestIdMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(HTTPException, http_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[origin.strip() for origin in settings.CORS_ORIGINS.split(",") if origin.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router)
app.include_router(subscription.router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("jobboard.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
