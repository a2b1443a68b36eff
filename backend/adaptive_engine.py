"""
Adaptive engine for computer-adaptive exams.

Ability model:
- Theta is a fixed-point ability estimate in [0, 1] with 2 decimals.
- After each answer theta moves by a step that depends on correctness and
  on how far the question's difficulty (1..5) is from average (3),
  factor = (difficulty - 3) * slope:
  * Correct   -> +(base_step - factor): difficulty 5 gains 0.08, difficulty 1 gains 0.28
  * Incorrect -> -(base_step + factor): difficulty 5 loses 0.28, difficulty 1 loses 0.08
- All arithmetic is Decimal with ROUND_HALF_UP so stored values are
  reproducible bit-for-bit.

Question selection:
- Theta maps monotonically onto a target difficulty 1..5
- Candidates come from a bounded window in a fixed order
- The exam's difficulty gate filters the window; if nothing survives, the
  whole window is used instead (some question beats no question)
- The candidate nearest to the target wins; ties keep window order
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, List, Optional, Tuple
import logging

from config import get_config

logger = logging.getLogger(__name__)

TWO_PLACES = Decimal("0.01")


def to_decimal(value) -> Decimal:
    """Coerce floats/strings/ints to Decimal without binary float artefacts"""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


@dataclass
class EngineSettings:
    """Tunable constants of the ability model"""
    base_step: Decimal = Decimal("0.18")
    slope: Decimal = Decimal("0.05")
    initial_theta: Decimal = Decimal("0.50")
    default_total_questions: int = 10
    candidate_window: int = 25
    default_difficulty: int = 3
    min_difficulty: int = 1
    max_difficulty: int = 5
    min_theta: Decimal = Decimal("0")
    max_theta: Decimal = Decimal("1")

    @classmethod
    def from_config(cls, engine_config: Dict):
        low, high = engine_config.get("difficulty_range", (1, 5))
        theta_low, theta_high = engine_config.get("theta_bounds", (Decimal("0"), Decimal("1")))
        return cls(
            base_step=to_decimal(engine_config.get("base_step", "0.18")),
            slope=to_decimal(engine_config.get("slope", "0.05")),
            initial_theta=to_decimal(engine_config.get("initial_theta", "0.50")),
            default_total_questions=engine_config.get("default_total_questions", 10),
            candidate_window=engine_config.get("candidate_window", 25),
            default_difficulty=engine_config.get("default_difficulty", 3),
            min_difficulty=low,
            max_difficulty=high,
            min_theta=to_decimal(theta_low),
            max_theta=to_decimal(theta_high),
        )


class AdaptiveEngine:
    """
    Stateless ability updater and next-question ranker.

    Nothing here touches the database: callers pass plain values and
    candidate dicts, which keeps every rule unit-testable.
    """

    def __init__(self, settings: Optional[EngineSettings] = None):
        if settings is None:
            settings = EngineSettings.from_config(get_config().get_engine_config())
        self.settings = settings

    # ---------- ability -> difficulty ----------

    def difficulty_from_theta(self, theta) -> int:
        """Map theta onto a target difficulty: 0 -> 1, 1 -> 5, monotonic"""
        raw = (to_decimal(theta) * 4).quantize(Decimal("1"), rounding=ROUND_HALF_UP) + 1
        return int(min(self.settings.max_difficulty, max(self.settings.min_difficulty, raw)))

    def difficulty_bounds(self, difficulty_min: Optional[int],
                          difficulty_max: Optional[int]) -> Tuple[int, int]:
        """Exam gate with defaults; an inverted gate is swapped, not rejected"""
        low = self.settings.min_difficulty if difficulty_min is None else difficulty_min
        high = self.settings.max_difficulty if difficulty_max is None else difficulty_max
        if low > high:
            return high, low
        return low, high

    def total_questions(self, question_count: Optional[int]) -> int:
        return max(1, question_count or self.settings.default_total_questions)

    # ---------- theta update ----------

    def clamp_theta(self, theta) -> Decimal:
        value = min(self.settings.max_theta, max(self.settings.min_theta, to_decimal(theta)))
        return value.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)

    def theta_delta(self, is_correct: bool, difficulty: int) -> Decimal:
        factor = (to_decimal(difficulty) - self.settings.default_difficulty) * self.settings.slope
        if is_correct:
            return self.settings.base_step - factor
        return -(self.settings.base_step + factor)

    def update_theta(self, theta_before, is_correct: bool,
                     difficulty: Optional[int]) -> Decimal:
        """New theta after one answer, clamped to [0, 1] and rounded half-up"""
        if difficulty is None:
            difficulty = self.settings.default_difficulty
        delta = self.theta_delta(is_correct, difficulty)
        theta_after = self.clamp_theta(to_decimal(theta_before) + delta)

        logger.debug(f"Theta updated: {theta_before} -> {theta_after} "
                     f"(delta={delta:+}, correct={is_correct}, difficulty={difficulty})")
        return theta_after

    # ---------- selection ----------

    def select_next_question(self, theta, candidates: List[Dict],
                             bounds: Tuple[int, int]) -> Optional[Dict]:
        """
        Pick the candidate whose difficulty is nearest the theta target.

        `candidates` must already be in fetch order (created_at, id); each dict
        carries `difficulty`, None when the question has never been scored.
        Unscored candidates always pass the gate and rank as the default
        difficulty.
        """
        if not candidates:
            return None

        target = self.difficulty_from_theta(theta)
        low, high = bounds

        gated = [c for c in candidates
                 if c.get("difficulty") is None or low <= c["difficulty"] <= high]
        if not gated:
            logger.info(f"No candidate inside difficulty gate [{low}, {high}], "
                        f"falling back to {len(candidates)} ungated candidates")
            gated = candidates

        # sorted() is stable, so equal distances keep fetch order
        ranked = sorted(gated, key=lambda c: abs(self._effective_difficulty(c) - target))
        best = ranked[0]

        logger.info(f"Selected question {best.get('id')}: "
                    f"difficulty={self._effective_difficulty(best)}, target={target}, "
                    f"pool={len(gated)}/{len(candidates)}")
        return best

    def _effective_difficulty(self, candidate: Dict) -> int:
        difficulty = candidate.get("difficulty")
        return self.settings.default_difficulty if difficulty is None else difficulty
