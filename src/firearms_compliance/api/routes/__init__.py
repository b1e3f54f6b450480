"""API routes."""

from firearms_compliance.api.routes.checkout import router as checkout_router
from firearms_compliance.api.routes.config import router as config_router
from firearms_compliance.api.routes.health import router as health_router
from firearms_compliance.api.routes.orders import router as orders_router

__all__ = ["checkout_router", "config_router", "health_router", "orders_router"]
