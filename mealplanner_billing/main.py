import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI
from starlette.exceptions import HTTPException as StarletteHTTPException

# Load env from the project .env before settings-dependent imports
project_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv(dotenv_path=os.path.join(project_dir, ".env"))

from mealplanner_billing.api import admin_billing, billing, entitlements, health, metrics, usage  # noqa: E402
from mealplanner_billing.container import Container, build_container, set_container  # noqa: E402
from mealplanner_billing.core.config import settings, validate_config  # noqa: E402
from mealplanner_billing.core.database import create_all_tables  # noqa: E402
from mealplanner_billing.core.errors import (  # noqa: E402
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from mealplanner_billing.core.logging import configure_logging  # noqa: E402
from mealplanner_billing.core.middleware.request_id import RequestIdMiddleware  # noqa: E402


def create_app(container: Optional[Container] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        container: Pre-built services (tests); built from settings when omitted
    """
    configure_logging(settings.ENV)
    validate_config(strict=getattr(settings, "CONFIG_STRICT", False))

    services = container or build_container()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger = logging.getLogger("mealplanner_billing")
        logger.info("Starting billing service...", extra={"backend": services.backend})
        if services.backend == "sql":
            create_all_tables()
        set_container(services)
        services.dispatcher.start()
        try:
            yield
        finally:
            services.dispatcher.stop()
            logging.getLogger("mealplanner_billing").info("Stopping billing service...")

    app = FastAPI(title="MealPlanner Billing", lifespan=lifespan)
    app.state.container = services

    app.add_middleware(RequestIdMiddleware)

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(billing.router, prefix="/api")
    app.include_router(entitlements.router, prefix="/api")
    app.include_router(usage.router, prefix="/api")
    app.include_router(admin_billing.router, tags=["admin-billing"])
    app.include_router(health.root_router, tags=["health"])
    app.include_router(metrics.router, tags=["metrics"])

    return app


app = create_app()
