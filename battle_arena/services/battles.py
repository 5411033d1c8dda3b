import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from battle_arena.core.errors import (
    AlreadyCompleted,
    NotCompleted,
    NotFound,
    ValidationError,
)
from battle_arena.core.metrics import (
    BATTLES_COMPLETED_TOTAL,
    BATTLES_CREATED_TOTAL,
    SUBMISSION_DURATION_SECONDS,
    SUBMISSIONS_RECEIVED_TOTAL,
    SUBMISSIONS_VALIDATION_FAILURES_TOTAL,
    DurationTimer,
)
from battle_arena.schemas import (
    MAX_USERNAME_LENGTH,
    BattleRecord,
    EvaluationResult,
    ScoreRecord,
    UserRecord,
    normalize_username,
)
from battle_arena.services.judge import (
    JudgingProvider,
    forfeit_evaluation,
    is_opponent_failure,
)
from battle_arena.services.leaderboard import LeaderboardAggregator
from battle_arena.services.locks import KeyedLocks
from battle_arena.storage.base import Storage

logger = logging.getLogger(__name__)

GUEST_PASSWORD = "guest"
OPPONENT_TYPES = ("ai", "human")


@dataclass(frozen=True)
class RoundPolicy:
    """Round timing. The client runs the clock; the service can enforce it."""

    duration_seconds: int = 180
    min_elapsed_seconds: int = 120
    min_solution_length: int = 10
    enforced: bool = False

    def too_early(self, created_at: datetime, now: Optional[datetime] = None) -> bool:
        elapsed = ((now or datetime.utcnow()) - created_at).total_seconds()
        return elapsed < self.min_elapsed_seconds


def score_fields(evaluation: EvaluationResult) -> dict:
    """Score row columns for an evaluation."""
    user, ai = evaluation.user_score, evaluation.ai_score
    return {
        "user_originality": user.originality,
        "user_logic": user.logic,
        "user_expression": user.expression,
        "ai_originality": ai.originality,
        "ai_logic": ai.logic,
        "ai_expression": ai.expression,
        "judge_feedback": evaluation.judge_feedback,
        "user_originality_feedback": user.originality_feedback,
        "user_logic_feedback": user.logic_feedback,
        "user_expression_feedback": user.expression_feedback,
        "ai_originality_feedback": ai.originality_feedback,
        "ai_logic_feedback": ai.logic_feedback,
        "ai_expression_feedback": ai.expression_feedback,
    }


class BattleService:
    """Runs battles through Open -> Submitted -> Evaluated.

    Open: created with a prompt, no solutions. Submitted: user solution
    stored. Evaluated: opponent solution, scores and winner stored and
    ``completed`` set. Nothing moves backwards.
    """

    def __init__(
        self,
        store: Storage,
        judge: JudgingProvider,
        leaderboard: Optional[LeaderboardAggregator] = None,
        policy: Optional[RoundPolicy] = None,
    ):
        self.store = store
        self.judge = judge
        self.leaderboard = leaderboard or LeaderboardAggregator(store)
        self.policy = policy or RoundPolicy()
        self._battle_locks = KeyedLocks()
        self._user_locks = KeyedLocks()

    # ---- users ----

    def get_or_create_user(self, username: Optional[str]) -> tuple[UserRecord, bool]:
        """Return ``(user, created)`` for a username. Blank names are rejected."""
        name = (username or "").strip()[:MAX_USERNAME_LENGTH].strip()
        if not name:
            raise ValidationError("Username is required")
        with self._user_locks.hold(name):
            existing = self.store.get_user_by_username(name)
            if existing:
                return existing, False
            try:
                user = self.store.create_user(name, GUEST_PASSWORD)
            except ValueError:
                # Created by someone else between lookup and insert
                existing = self.store.get_user_by_username(name)
                if existing is None:
                    raise
                return existing, False
        logger.info(f"Created new user: {name}, ID: {user.id}", extra={"user_id": user.id, "username": name})
        return user, True

    def _guest_user(self) -> UserRecord:
        base = f"Guest_{str(int(time.time() * 1000))[-6:]}"
        name = base
        suffix = 1
        while True:
            with self._user_locks.hold(name):
                if self.store.get_user_by_username(name) is None:
                    try:
                        user = self.store.create_user(name, GUEST_PASSWORD)
                    except ValueError:
                        user = None
                    if user is not None:
                        logger.info(
                            f"Created anonymous user: {name}, ID: {user.id}",
                            extra={"user_id": user.id, "username": name},
                        )
                        return user
            name = f"{base}_{suffix}"
            suffix += 1

    def resolve_user(self, username: Optional[str]) -> UserRecord:
        name = normalize_username(username)
        if name is None:
            return self._guest_user()
        user, created = self.get_or_create_user(name)
        if not created:
            logger.info(f"Using existing user: {name}, ID: {user.id}", extra={"user_id": user.id, "username": name})
        return user

    # ---- battles ----

    def create_battle(self, opponent_type: str = "ai", username: Optional[str] = None) -> BattleRecord:
        if opponent_type not in OPPONENT_TYPES:
            raise ValidationError(f"Invalid opponent type: {opponent_type}")
        user = self.resolve_user(username)
        prompt = self.judge.generate_prompt()
        battle = self.store.create_battle(prompt, user.id, opponent_type)
        BATTLES_CREATED_TOTAL.labels(opponent_type=opponent_type).inc()
        logger.info(
            "battle_created",
            extra={
                "battle_id": battle.id,
                "user_id": user.id,
                "username": user.username,
                "opponent_type": opponent_type,
            },
        )
        return battle

    def get_battle(self, battle_id: int) -> BattleRecord:
        battle = self.store.get_battle(battle_id)
        if battle is None:
            raise NotFound("Battle not found")
        return battle

    def get_results(self, battle_id: int) -> tuple[BattleRecord, ScoreRecord]:
        battle = self.get_battle(battle_id)
        if not battle.completed:
            raise NotCompleted("Battle not yet completed")
        score = self.store.get_score_by_battle_id(battle_id)
        if score is None:
            raise NotFound("Battle score not found")
        return battle, score

    def submit_solution(self, battle_id: int, solution: str, is_auto_submit: bool = False) -> None:
        """Store the user's solution and carry the battle through to Evaluated.

        Calls for the same battle run one at a time. A battle left Submitted
        by an interrupted call is resumed from what was already stored, so a
        retry never scores a battle twice.
        """
        mode = "auto" if is_auto_submit else "manual"
        SUBMISSIONS_RECEIVED_TOTAL.labels(mode=mode).inc()
        with self._battle_locks.hold(battle_id):
            battle = self.get_battle(battle_id)
            if battle.completed:
                SUBMISSIONS_VALIDATION_FAILURES_TOTAL.labels(reason="already_completed").inc()
                raise AlreadyCompleted("Battle already completed")
            if not is_auto_submit:
                self._check_manual_submission(battle, solution)

            with DurationTimer() as t:
                self._complete(battle, solution, mode)
            SUBMISSION_DURATION_SECONDS.observe(t.seconds)

    def _check_manual_submission(self, battle: BattleRecord, solution: str) -> None:
        if len((solution or "").strip()) < self.policy.min_solution_length:
            SUBMISSIONS_VALIDATION_FAILURES_TOTAL.labels(reason="too_short").inc()
            raise ValidationError(
                "Solution is too short. Please provide a more substantial response."
            )
        if self.policy.enforced and self.policy.too_early(battle.created_at):
            SUBMISSIONS_VALIDATION_FAILURES_TOTAL.labels(reason="too_early").inc()
            raise ValidationError(
                f"Submissions open after {self.policy.min_elapsed_seconds} seconds."
            )

    def _complete(self, battle: BattleRecord, solution: str, mode: str) -> None:
        log_extra = {"battle_id": battle.id, "user_id": battle.user_id}

        # Open -> Submitted
        if battle.user_solution is None:
            battle = self.store.update_battle(battle.id, user_solution=solution)
            logger.info(f"Solution stored ({mode})", extra={**log_extra, "stage": "submitted"})
        else:
            logger.warning("Resuming interrupted submission", extra={**log_extra, "stage": "resume"})

        # Opponent
        if battle.ai_solution is None:
            ai_solution = self.judge.generate_opponent_response(battle.prompt)
            battle = self.store.update_battle(battle.id, ai_solution=ai_solution)

        # Evaluation, unless an earlier attempt already stored the score
        score = self.store.get_score_by_battle_id(battle.id)
        evaluation: Optional[EvaluationResult] = None
        if score is None:
            if is_opponent_failure(battle.ai_solution):
                logger.info(
                    "AI failed to generate a response - user automatically wins",
                    extra={**log_extra, "stage": "forfeit"},
                )
                evaluation = forfeit_evaluation()
                path = "forfeit"
            else:
                evaluation = self.judge.evaluate(battle.prompt, battle.user_solution, battle.ai_solution)
                path = "judged"
            score = self.store.create_score(battle.id, **score_fields(evaluation))
        else:
            path = "resumed"

        user_total = score.user_originality + score.user_logic + score.user_expression
        ai_total = score.ai_originality + score.ai_logic + score.ai_expression
        if evaluation is not None:
            user_won = evaluation.winner == "user"
        else:
            # Tied totals on resume: the stored row no longer carries the judge's call
            user_won = user_total >= ai_total

        # Submitted -> Evaluated
        self.store.update_battle(
            battle.id,
            user_score=user_total,
            ai_score=ai_total,
            user_won=user_won,
            completed=True,
        )
        BATTLES_COMPLETED_TOTAL.labels(winner="user" if user_won else "ai", path=path).inc()
        logger.info(
            f"Battle completed: user {user_total} vs ai {ai_total}",
            extra={**log_extra, "stage": "evaluated"},
        )

        user = self.store.get_user(battle.user_id)
        if user is not None:
            self.leaderboard.record_outcome(user.username, user.id, user_won, user_total)
        else:
            logger.error("Battle owner not found; leaderboard not updated", extra=log_extra)
