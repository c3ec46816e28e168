import logging
import os
import time
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from fastapi.middleware.cors import CORSMiddleware

# Load env from snippetfactory/.env before settings are read
package_dir = os.path.dirname(os.path.abspath(__file__))
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv(dotenv_path=os.path.join(package_dir, ".env"))

from snippetfactory.core.config import settings, validate_config  # noqa: E402
from snippetfactory.core.database import create_all_tables, dispose_engine  # noqa: E402
from snippetfactory.core.errors import (  # noqa: E402
    AppError,
    app_error_handler,
    http_error_handler,
    request_validation_error_handler,
    unhandled_exception_handler,
)
from snippetfactory.core.logging import configure_logging  # noqa: E402
from snippetfactory.core.middleware.request_id import RequestIdMiddleware  # noqa: E402
from snippetfactory.core.validation import validate_env  # noqa: E402
from snippetfactory.api import analytics, cron, entitlements, health, keys, snippets, team, v1  # noqa: E402
from snippetfactory.features.plans.service import get_plan_registry  # noqa: E402
from snippetfactory.features.usage.service import get_usage_recorder  # noqa: E402

configure_logging(settings.ENV)
validate_env()
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("snippetfactory")
    logger.info("Starting Snippet Factory backend...")
    app.state.startup_time = time.time()
    # Fail fast on a bad plan file
    registry = get_plan_registry()
    logger.info("Plan registry ready", extra={"plans": registry.plan_ids})
    create_all_tables()
    try:
        yield
    finally:
        logger.info("Stopping Snippet Factory backend...")
        recorder = get_usage_recorder()
        recorder.flush(timeout=settings.USAGE_RECORD_TIMEOUT_SECONDS)
        recorder.shutdown(wait=True)
        get_usage_recorder.cache_clear()
        dispose_engine()


app = FastAPI(title="Snippet Factory - Backend", lifespan=lifespan)

# Middlewares
app.add_middleware(RequestIdMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(StarletteHTTPException, http_error_handler)
app.add_exception_handler(RequestValidationError, request_validation_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

# CORS (adjust origins in production)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.root_router)
app.include_router(entitlements.router)
app.include_router(analytics.router)
app.include_router(snippets.router)
app.include_router(team.router)
app.include_router(keys.router)
app.include_router(v1.router)
app.include_router(cron.router)
