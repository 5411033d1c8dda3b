from typing import Optional

from fastapi import APIRouter, Depends

from battle_arena.api.deps import get_battle_service, http_errors, parse_battle_id
from battle_arena.schemas import (
    BattleCreateRequest,
    BattleRecord,
    BattleResults,
    RoundPolicyResponse,
    SubmitRequest,
    SubmitResponse,
)
from battle_arena.services.battles import BattleService


router = APIRouter()


@router.post("/battles", response_model=BattleRecord, status_code=201)
def create_battle(
    body: Optional[BattleCreateRequest] = None,
    service: BattleService = Depends(get_battle_service),
):
    """Start a battle with a fresh prompt. No username means a new guest user."""
    body = body or BattleCreateRequest()
    with http_errors("Failed to create battle", opponent_type=body.opponent_type):
        return service.create_battle(body.opponent_type, body.username)


@router.get("/battles/{battle_id}", response_model=BattleRecord)
def get_battle(battle_id: str, service: BattleService = Depends(get_battle_service)):
    bid = parse_battle_id(battle_id)
    with http_errors("Failed to fetch battle", battle_id=bid):
        return service.get_battle(bid)


@router.post("/battles/{battle_id}/submit", response_model=SubmitResponse)
def submit_solution(
    battle_id: str,
    body: SubmitRequest,
    service: BattleService = Depends(get_battle_service),
):
    """Submit the user's solution; the battle is judged before this returns.

    Auto-submits (round timer ran out) skip the length check and may be empty.
    """
    bid = parse_battle_id(battle_id)
    with http_errors("Failed to submit solution", battle_id=bid):
        service.submit_solution(bid, body.solution, body.is_auto_submit)
    return SubmitResponse(success=True)


@router.get("/battles/{battle_id}/results", response_model=BattleResults)
def get_results(battle_id: str, service: BattleService = Depends(get_battle_service)):
    bid = parse_battle_id(battle_id)
    with http_errors("Failed to fetch battle results", battle_id=bid):
        battle, scores = service.get_results(bid)
    return BattleResults(battle=battle, scores=scores)


@router.get("/round-policy", response_model=RoundPolicyResponse)
def round_policy(service: BattleService = Depends(get_battle_service)):
    policy = service.policy
    return RoundPolicyResponse(
        duration_seconds=policy.duration_seconds,
        min_elapsed_seconds=policy.min_elapsed_seconds,
        min_solution_length=policy.min_solution_length,
        enforced=policy.enforced,
    )
