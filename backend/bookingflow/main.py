# backend/bookingflow/main.py
from __future__ import annotations

from contextlib import asynccontextmanager
import logging
from typing import AsyncGenerator, Dict

from fastapi import APIRouter, FastAPI
from fastapi.routing import APIRoute

from . import __version__
from .core.config import is_running_tests, settings
from .routes import prometheus, stripe_webhooks
from .routes.v1 import checkout as checkout_v1
from .routes.v1 import operations as operations_v1

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def app_lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Handle application startup/shutdown without deprecated events."""
    logger.info("Booking pipeline API starting up...")
    logger.info(f"Environment: {settings.environment}")
    if is_running_tests():
        logger.info("Running under pytest")
    if not settings.stripe_secret_key:
        logger.warning("STRIPE_SECRET_KEY not set; checkout and refunds will fail")
    if not settings.webhook_secret_value():
        logger.warning("STRIPE_WEBHOOK_SECRET not set; webhook deliveries will be refused")
    yield
    logger.info("Booking pipeline API shutting down...")


def _unique_operation_id(route: APIRoute) -> str:
    methods = "_".join(sorted(m.lower() for m in route.methods or []))
    path = route.path_format.replace("/", "_").replace("{", "").replace("}", "").strip("_")
    name = (route.name or "operation").lower().replace(" ", "_")
    return f"{methods}__{path}__{name}".strip("_")


app = FastAPI(
    title="Booking Flow API",
    description="Slot reservation and payment confirmation pipeline",
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=app_lifespan,
    generate_unique_id_function=_unique_operation_id,
)

# Create API v1 router
api_v1 = APIRouter(prefix="/api/v1")
api_v1.include_router(checkout_v1.router, prefix="/checkout")
api_v1.include_router(operations_v1.router, prefix="/operations")

app.include_router(api_v1)
app.include_router(stripe_webhooks.router)
app.include_router(prometheus.router)


@app.get("/health", include_in_schema=False)
def health_check() -> Dict[str, str]:
    return {"status": "healthy", "environment": settings.environment}
