from typing import Any

from fastapi import APIRouter, Depends

from ..auth.deps import get_current_user
from ..deps import get_presence
from ..services.presence import PresenceRegistry

router = APIRouter()


@router.get("/presence/{user_id}")
def get_presence_status(
    user_id: int,
    current_user: dict[str, Any] = Depends(get_current_user),
    presence: PresenceRegistry = Depends(get_presence),
) -> dict[str, Any]:
    return {"user_id": user_id, "online": presence.is_online(user_id)}
