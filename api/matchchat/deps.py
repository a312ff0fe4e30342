from fastapi import Header, HTTPException, Request

from . import config
from .services.presence import PresenceRegistry
from .services.realtime import ConnectionHub


def validate_admin_token(token: str | None, admin_token: str | None) -> None:
    if not admin_token or not token or token != admin_token:
        raise HTTPException(status_code=401, detail="Invalid admin token")


def require_admin(x_admin_token: str | None = Header(default=None, alias="X-Admin-Token")) -> None:
    validate_admin_token(x_admin_token, config.ADMIN_TOKEN)


def get_presence(request: Request) -> PresenceRegistry:
    return request.app.state.presence


def get_hub(request: Request) -> ConnectionHub:
    return request.app.state.hub
