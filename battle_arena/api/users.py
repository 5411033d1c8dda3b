from fastapi import APIRouter, Depends, Response

from battle_arena.api.deps import get_battle_service, http_errors
from battle_arena.schemas import UserCreateRequest, UserRecord
from battle_arena.services.battles import BattleService

router = APIRouter()


@router.post("/users", response_model=UserRecord)
def create_user(
    body: UserCreateRequest,
    response: Response,
    service: BattleService = Depends(get_battle_service),
):
    """Return the user with this name, creating it (201) if needed."""
    with http_errors("Failed to create user"):
        user, created = service.get_or_create_user(body.username)
    response.status_code = 201 if created else 200
    return user
