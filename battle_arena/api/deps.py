import logging
from contextlib import contextmanager

from fastapi import HTTPException, Request

from battle_arena.core.errors import BattleArenaError
from battle_arena.services.battles import BattleService

logger = logging.getLogger(__name__)


def get_battle_service(request: Request) -> BattleService:
    return request.app.state.battle_service


def parse_battle_id(raw: str) -> int:
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise HTTPException(400, "Invalid battle ID")


@contextmanager
def http_errors(failure_message: str, **log_extra):
    """Translate service errors into HTTP responses.

    Domain errors keep their message and status; anything else is logged and
    answered with ``failure_message``.
    """
    try:
        yield
    except HTTPException:
        raise
    except BattleArenaError as e:
        raise HTTPException(e.status_code, e.message)
    except Exception:
        logger.exception(failure_message, extra=log_extra)
        raise HTTPException(500, failure_message)
