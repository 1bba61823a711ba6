"""API route aggregation.

All routers registered here get mounted in main.py.

Learn: Unlike a typical API, most routes here are open. The ceremonies
are how a caller becomes authenticated in the first place, so auth is
applied per route (get_current_user / get_current_user_optional) rather
than at the include_router level.
"""

from fastapi import APIRouter

from latchkey.api.health import router as health_router
from latchkey.api.passkeys import router as passkeys_router
from latchkey.api.users import router as users_router

api_router = APIRouter(prefix="/api/v1")

api_router.include_router(health_router, tags=["health"])
api_router.include_router(passkeys_router, tags=["passkeys"])
api_router.include_router(users_router, tags=["users"])
