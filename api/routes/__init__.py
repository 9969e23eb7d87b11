"""
Route modules. Import and include in main app.
"""

from api.routes.health import router as health_router
from api.routes.index import router as index_router
from api.routes.public import router as public_router
from api.routes.users import router as users_router

__all__ = ["health_router", "index_router", "public_router", "users_router"]
