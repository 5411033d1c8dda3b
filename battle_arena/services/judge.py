"""Judging provider: prompts, opponent solutions and evaluations.

Every provider is total. Whatever happens behind it, each operation returns a
usable value, because a battle waiting on a judge that raised would sit in the
Submitted state forever. Backend failures are logged and turned into
synthetic results here; callers never see them.
"""

import json
import logging
import math
import random
import re
from abc import ABC, abstractmethod
from typing import Optional

from pydantic import ValidationError as PydanticValidationError

from battle_arena.core.config import JudgeConfig
from battle_arena.core.errors import JudgingUnavailable
from battle_arena.core.metrics import (
    JUDGE_CALLS_TOTAL,
    JUDGE_CALL_DURATION_SECONDS,
    JUDGE_FALLBACK_TOTAL,
    DurationTimer,
)
from battle_arena.schemas import EvaluationResult, SideScore

logger = logging.getLogger(__name__)

# Returned when no opponent solution could be produced. The orchestrator
# matches on this exact text to award the round to the user.
OPPONENT_FAILURE_SENTINEL = (
    "The AI was unable to generate a solution at this time due to technical difficulties. "
    "According to the rules, when AI fails to generate a response, the user automatically wins this round."
)

MAX_PROMPT_WORDS = 15
SHORT_SOLUTION_CHARS = 20
USER_WIN_PROBABILITY = 0.8

# Winner categories are drawn strictly above loser categories
WINNER_BAND = (72, 95)
LOSER_BAND = (50, 70)

PROMPT_POOL = [
    # Technology & computing
    "Design a new programming language that uses natural human gestures instead of typing",
    "Create a computer interface for people who have no hands or mobility",
    "Design a smart city infrastructure that respects privacy while enhancing safety",
    "Invent a new social media platform that promotes genuine human connection",
    "Design an AI assistant for mental health that respects ethical boundaries",
    "Create a digital solution to combat misinformation that doesn't restrict free speech",
    "Design a technology that helps preserve endangered languages",
    "Invent a new cryptocurrency that solves current blockchain environmental issues",
    "Design a system that makes complex data visualizations accessible to blind users",
    "Create a technology that lets people experience each other's emotions remotely",
    # Science & innovation
    "Design a device that could capture and store carbon dioxide from the atmosphere",
    "Create a renewable energy solution for areas with extreme weather conditions",
    "Invent a material that could replace plastic in all common applications",
    "Design a sustainable water purification system for remote communities",
    "Create a solution for managing e-waste in urban environments",
    "Design a novel renewable energy technology for individual homes",
    "Invent a new type of battery with 10x current capacity",
    "Design a device that enhances human productivity through neural interfaces",
    "Create a new form of agriculture suitable for Mars colonization",
    "Invent a new encryption method using biological principles",
    # AI & future tech
    "Design an AI system that could help predict and prevent natural disasters",
    "Create a fair and transparent algorithm for college admissions",
    "Invent a new type of quantum computing application for everyday use",
    "Design a robot that could help restore damaged ecosystems",
    "Create an AI that can translate animal communication to human language",
    "Design a virtual reality experience that helps people overcome phobias",
    "Invent a new form of digital democracy that increases participation",
    "Design an AI system that creates personalized learning experiences",
    "Create a technology that helps preserve human knowledge for 10,000 years",
    "Invent a new way to archive digital information that doesn't degrade",
]

CANNED_RESPONSES = [
    # Technology
    "My solution is a mesh of small, independent nodes that process requests in parallel and "
    "verify each other's results, so no single failure corrupts the whole. Each node learns from "
    "local usage and shares only aggregated patterns, which keeps personal data on the device. "
    "The architecture is modular: a town can start with a handful of nodes and grow without "
    "redesigning anything, because every component speaks the same open protocol. Power comes "
    "from rooftop solar with aggressive sleep scheduling, cutting running costs to almost nothing. "
    "The interface adapts to each person, offering voice, touch or large-text modes, yet keeps the "
    "same layout everywhere so nobody has to relearn it. Rollout starts with libraries and "
    "schools, where volunteers gather feedback that shapes the next release.",
    # Environment
    "I propose a bio-inspired system that copies how wetlands clean water and lock away carbon. "
    "Engineered microbes live in modular clay cartridges that slot into existing drains, gutters "
    "and ventilation ducts, so no new infrastructure is needed. Each cartridge is tuned for one "
    "task, such as breaking down plastics, filtering metals or binding carbon, and changes colour "
    "when it needs replacing. Spent cartridges are composted, returning the captured carbon to "
    "soil instead of the air. The design scales from a single apartment to a whole district, and "
    "a simple community app shows residents how much they have cleaned this month, turning "
    "maintenance into a friendly local competition that keeps the system running for years.",
    # AI & computing
    "My approach pairs a neural network with a small rule engine so every decision comes with a "
    "readable explanation. The network proposes options, the rules check them against clear "
    "constraints, and anything that fails is rejected with a reason a person can understand. "
    "Training uses federated learning, so sensitive records never leave the hospitals, schools or "
    "councils that own them. Deployment happens in stages: a shadow phase where humans compare "
    "the system's suggestions with their own, then an assisted phase, and only later limited "
    "automation. Every stage publishes its error rates. That transparency builds trust while "
    "keeping performance close to black-box models, and makes it easy to spot drift early.",
    # Social
    "I've designed a platform that matches people by complementary skills rather than shared "
    "interests, so a retired engineer meets a teenager with an idea and a designer who can draw "
    "it. Reputation grows from helping, not from followers, and there are no public like counts "
    "to chase. Small neighbourhood pilots come first, and their data guides each refinement. "
    "Privacy controls are simple switches with plain-language explanations, and members own their "
    "data outright. The platform runs as a cooperative: members vote on features and share any "
    "surplus, so the business only succeeds when its users do. Offline meetups are built into "
    "every project, turning online introductions into lasting local friendships and real work.",
]


def is_opponent_failure(text: Optional[str]) -> bool:
    return (text or "").strip() == OPPONENT_FAILURE_SENTINEL


def forfeit_evaluation() -> EvaluationResult:
    """Fixed result used when the opponent could not produce a solution."""
    return EvaluationResult(
        user_score=SideScore(
            originality=80,
            logic=85,
            expression=75,
            originality_feedback="Your solution shows creativity and novel thinking.",
            logic_feedback="The approach is practical, well reasoned and covers the key parts of the challenge.",
            expression_feedback="The solution is clearly articulated and engaging.",
        ),
        ai_score=SideScore(
            originality=30,
            logic=25,
            expression=15,
            originality_feedback="The AI could not provide a solution because of technical difficulties.",
            logic_feedback="No approach was provided because of technical issues.",
            expression_feedback="Nothing was expressed because of the technical failure.",
        ),
        judge_feedback=(
            "You provided a solution while the AI ran into technical difficulties, "
            "so you win this round automatically."
        ),
        winner="user",
    )


_FEEDBACK = {
    "user": {
        True: (
            "Your solution shows real creativity and tackles the challenge from an original angle.",
            "Your solution is well structured, with a clear practical approach and thoughtful details.",
            "Your idea is communicated clearly and in language that makes it easy to follow.",
        ),
        False: (
            "Your solution has interesting elements but follows fairly predictable patterns.",
            "Your approach has merit but needs more thought about practical obstacles.",
            "Your writing is adequate but could be tighter and more engaging.",
        ),
    },
    "ai": {
        True: (
            "The AI solution shows creative thinking and a fresh approach to the challenge.",
            "The AI approach is well structured, practical and soundly reasoned.",
            "The AI solution is clearly communicated with an effective structure.",
        ),
        False: (
            "The AI solution has some creative touches but lacks the originality of yours.",
            "The AI solution is logical but less practical than yours.",
            "The AI writing is competent but less clear and engaging than yours.",
        ),
    },
}


def _side(rng: random.Random, side: str, won: bool) -> SideScore:
    low, high = WINNER_BAND if won else LOSER_BAND
    originality_fb, logic_fb, expression_fb = _FEEDBACK[side][won]
    return SideScore(
        originality=rng.randint(low, high),
        logic=rng.randint(low, high),
        expression=rng.randint(low, high),
        originality_feedback=originality_fb,
        logic_feedback=logic_fb,
        expression_feedback=expression_fb,
    )


def synthetic_evaluation(user_solution: Optional[str], rng: Optional[random.Random] = None) -> EvaluationResult:
    """Plausible evaluation produced without a judge.

    A user solution under 20 trimmed characters always loses. Otherwise the
    user wins 80% of the time; the bias is part of the game.
    """
    rng = rng or random.Random()
    if len((user_solution or "").strip()) < SHORT_SOLUTION_CHARS:
        user_wins = False
    else:
        user_wins = rng.random() < USER_WIN_PROBABILITY

    if user_wins:
        judge_feedback = (
            "Your solution stands out for its originality and practicality. You balanced creative "
            "thinking with feasibility and explained it clearly."
        )
    else:
        judge_feedback = (
            "The AI solution balanced creativity, logical structure and clear expression. Keep "
            "developing your own approach for next time!"
        )
    return EvaluationResult(
        user_score=_side(rng, "user", user_wins),
        ai_score=_side(rng, "ai", not user_wins),
        judge_feedback=judge_feedback,
        winner="user" if user_wins else "ai",
    )


def _clamp(value) -> int:
    number = float(value)
    if not math.isfinite(number):
        raise ValueError(f"Score is not a finite number: {value!r}")
    return max(0, min(100, int(round(number))))


def parse_evaluation(raw: str) -> EvaluationResult:
    """Turn a judge's JSON reply into an EvaluationResult.

    Category scores are clamped to 0-100 and the winner follows the higher
    total; the judge's own pick only settles an exact tie. Raises ValueError
    when the reply cannot be used.
    """
    match = re.search(r"\{.*\}", raw or "", re.DOTALL)
    if not match:
        raise ValueError("No JSON object in judge reply")
    data = json.loads(match.group(0))

    for side in ("userScore", "aiScore"):
        scores = data.get(side)
        if not isinstance(scores, dict):
            raise ValueError(f"Judge reply is missing {side}")
        for criterion in ("originality", "logic", "expression"):
            scores[criterion] = _clamp(scores[criterion])

    stated = str(data.get("winner", "")).strip().lower()
    data["winner"] = stated if stated in ("user", "ai") else "user"
    data.setdefault("judgeFeedback", "")
    try:
        result = EvaluationResult.model_validate(data)
    except PydanticValidationError as e:
        raise ValueError(f"Judge reply failed validation: {e}") from e

    user_total = result.user_score.total
    ai_total = result.ai_score.total
    if user_total != ai_total:
        result.winner = "user" if user_total > ai_total else "ai"
    return result


def clean_prompt(text: Optional[str]) -> str:
    """First line of a generated prompt, unquoted and capped at 15 words."""
    line = (text or "").strip().splitlines()[0] if (text or "").strip() else ""
    line = line.strip().strip("\"'").strip()
    words = line.split()
    return " ".join(words[:MAX_PROMPT_WORDS])


class JudgingProvider(ABC):
    """Produces prompts, opponent solutions and evaluations."""

    name = "base"

    def __init__(self, config: Optional[JudgeConfig] = None, rng: Optional[random.Random] = None):
        self.config = config or JudgeConfig()
        self.rng = rng or random.Random()

    @abstractmethod
    def generate_prompt(self) -> str: ...

    @abstractmethod
    def generate_opponent_response(self, prompt: str) -> str: ...

    @abstractmethod
    def evaluate(self, prompt: str, user_solution: str, opponent_solution: str) -> EvaluationResult: ...

    def pool_prompt(self) -> str:
        return self.rng.choice(PROMPT_POOL)


class OfflineJudge(JudgingProvider):
    """No network at all: pooled prompts, canned solutions, synthetic scores."""

    name = "offline"

    def generate_prompt(self) -> str:
        logger.info("Using offline mode for prompt generation", extra={"judge_backend": self.name})
        return self.pool_prompt()

    def generate_opponent_response(self, prompt: str) -> str:
        logger.info("Using offline mode for opponent response", extra={"judge_backend": self.name})
        return self.rng.choice(CANNED_RESPONSES)

    def evaluate(self, prompt: str, user_solution: str, opponent_solution: str) -> EvaluationResult:
        logger.info("Using offline mode for battle evaluation", extra={"judge_backend": self.name})
        return synthetic_evaluation(user_solution, self.rng)


PROMPT_SYSTEM = (
    "Generate ONE creative prompt (maximum 15 words) for a creative challenge. The prompt should "
    "be about designing, inventing, or creating something innovative. Only output the prompt."
)

OPPONENT_SYSTEM = "Be creative. Write a brief solution (120-150 words) to the prompt. Be original and practical."

EVALUATION_SYSTEM = """You are an expert judge evaluating creative solutions to a challenge.
Rate two solutions (User and AI) on three criteria, each 0-100:
1. Originality: novelty, uniqueness and creative thinking.
2. Logic: practicality, feasibility and sound reasoning.
3. Expression: clarity, engagement and effective communication.
For each criterion give specific, constructive feedback (2-3 sentences).
The winner is the solution with the higher total.
Return JSON only, with this structure:
{
  "userScore": {"originality": n, "logic": n, "expression": n,
                "originalityFeedback": "...", "logicFeedback": "...", "expressionFeedback": "..."},
  "aiScore": {"originality": n, "logic": n, "expression": n,
              "originalityFeedback": "...", "logicFeedback": "...", "expressionFeedback": "..."},
  "judgeFeedback": "...",
  "winner": "user" or "ai"
}"""


class BackendJudge(JudgingProvider):
    """Base for judges that call a chat-completions backend.

    Subclasses implement :meth:`complete`, which may raise anything; the
    timeout and attempt bounds from the config apply inside it.
    """

    name = "backend"

    @abstractmethod
    def complete(
        self,
        messages: list[dict[str, str]],
        max_tokens: int,
        temperature: float,
        json_mode: bool = False,
    ) -> str: ...

    def _ask(self, operation: str, messages: list[dict[str, str]], **kwargs) -> Optional[str]:
        """Run one backend call. Returns None when the backend is unusable."""
        if not self.config.use_backend:
            JUDGE_FALLBACK_TOTAL.labels(operation=operation, reason="no_credentials").inc()
            logger.warning(
                f"Judge backend not configured; using fallback for {operation}",
                extra={"judge_backend": self.name, "operation": operation},
            )
            return None
        try:
            with DurationTimer() as t:
                text = self.complete(messages, **kwargs)
            JUDGE_CALLS_TOTAL.labels(backend=self.name, operation=operation, outcome="ok").inc()
            JUDGE_CALL_DURATION_SECONDS.labels(backend=self.name, operation=operation).observe(t.seconds)
        except Exception as e:
            JUDGE_CALLS_TOTAL.labels(backend=self.name, operation=operation, outcome="error").inc()
            JUDGE_FALLBACK_TOTAL.labels(operation=operation, reason="backend_error").inc()
            unavailable = JudgingUnavailable(f"{self.name} {operation} failed: {e}")
            logger.error(
                f"judge_unavailable: {unavailable.message}",
                extra={"judge_backend": self.name, "operation": operation},
            )
            return None
        text = (text or "").strip()
        if not text:
            JUDGE_FALLBACK_TOTAL.labels(operation=operation, reason="empty_reply").inc()
            logger.error(
                f"Empty {operation} reply from {self.name}",
                extra={"judge_backend": self.name, "operation": operation},
            )
            return None
        return text

    def generate_prompt(self) -> str:
        text = self._ask(
            "generate_prompt",
            [{"role": "system", "content": PROMPT_SYSTEM}],
            max_tokens=30,
            temperature=0.7,
        )
        return clean_prompt(text) or self.pool_prompt()

    def generate_opponent_response(self, prompt: str) -> str:
        logger.info(
            f"Generating opponent response for prompt: {prompt[:30]}...",
            extra={"judge_backend": self.name},
        )
        text = self._ask(
            "generate_opponent_response",
            [
                {"role": "system", "content": OPPONENT_SYSTEM},
                {"role": "user", "content": prompt},
            ],
            max_tokens=200,
            temperature=0.7,
        )
        return text or OPPONENT_FAILURE_SENTINEL

    def evaluate(self, prompt: str, user_solution: str, opponent_solution: str) -> EvaluationResult:
        raw = self._ask(
            "evaluate",
            [
                {"role": "system", "content": EVALUATION_SYSTEM},
                {
                    "role": "user",
                    "content": f"Prompt: {prompt}\n\nUser Solution: {user_solution}\n\nAI Solution: {opponent_solution}",
                },
            ],
            max_tokens=800,
            temperature=0.4,
            json_mode=True,
        )
        if raw is not None:
            try:
                return parse_evaluation(raw)
            except (ValueError, KeyError, TypeError, OverflowError) as e:
                JUDGE_FALLBACK_TOTAL.labels(operation="evaluate", reason="unparseable_reply").inc()
                logger.error(
                    f"Could not parse evaluation from {self.name}: {e}",
                    extra={"judge_backend": self.name, "operation": "evaluate"},
                )
        return synthetic_evaluation(user_solution, self.rng)


def build_judge(config: JudgeConfig, rng: Optional[random.Random] = None) -> JudgingProvider:
    """Pick the provider variant named by the config."""
    if config.offline_mode or config.backend == "offline":
        judge: JudgingProvider = OfflineJudge(config, rng)
    elif config.backend == "perplexity":
        from battle_arena.services.judge_backends import PerplexityJudge
        judge = PerplexityJudge(config, rng)
    elif config.backend == "openai":
        from battle_arena.services.judge_backends import OpenAIJudge
        judge = OpenAIJudge(config, rng)
    else:
        raise ValueError(f"Unknown judge backend: {config.backend}")
    logger.info(
        f"Judge provider ready: {judge.name} (credential {'present' if config.api_key else 'missing'})",
        extra={"judge_backend": judge.name},
    )
    return judge
