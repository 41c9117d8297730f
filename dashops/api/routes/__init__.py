from dashops.api.routes.catalog import router as catalog_router
from dashops.api.routes.operations import router as operations_router

__all__ = ["catalog_router", "operations_router"]
