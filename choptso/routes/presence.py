from fastapi import APIRouter, Depends

from choptso.core.auth import Actor, get_current_actor
from choptso.dependencies import get_presence_service
from choptso.schemas.presence import PresenceResponse, StatusUpdate
from choptso.services.presence_service import PresenceService

router = APIRouter()


@router.put("/presence/{user_id}", response_model=PresenceResponse)
async def set_status(
    user_id: str,
    payload: StatusUpdate,
    actor: Actor = Depends(get_current_actor),
    presence: PresenceService = Depends(get_presence_service)
):
    """Set a user's status. Users may only change their own unless admin."""
    result = await presence.set_status(
        actor.user_id,
        user_id,
        payload.status,
        emoji=payload.emoji,
        is_admin=actor.is_admin,
    )
    return PresenceResponse.from_model(result)


@router.get("/presence/{user_id}", response_model=PresenceResponse)
async def get_status(
    user_id: str,
    actor: Actor = Depends(get_current_actor),
    presence: PresenceService = Depends(get_presence_service)
):
    return PresenceResponse.from_model(await presence.get_status(user_id))
