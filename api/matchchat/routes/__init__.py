from fastapi import FastAPI

from .admin import router as admin_router
from .chat import router as chat_router
from .match import router as match_router
from .presence import router as presence_router
from .profile import router as profile_router
from .realtime import router as realtime_router


def include_modular_routers(app: FastAPI) -> None:
    app.include_router(chat_router, tags=["chat"])
    app.include_router(match_router, tags=["matches"])
    app.include_router(profile_router, tags=["disclosure"])
    app.include_router(presence_router, tags=["presence"])
    app.include_router(admin_router, tags=["admin"])
    app.include_router(realtime_router)


__all__ = ["include_modular_routers"]
