"""
Interval Policy - SM-2 style review interval calculation.

Pure calculator: given the current retention state, a feedback grade and the
instant of the review, return the next state. No I/O, no wall clock.

Rules:
1. Again - failure counter increments; at the reset threshold the interval
   drops to the minimum and ease takes a penalty. Next review after the
   minimum interval.
2. Hard  - interval shrinks (divided by the hard divisor), small ease penalty.
3. Good  - interval grows by the ease factor.
4. Easy  - interval grows by ease * easy bonus, ease increases.

Reviews arriving more than a grace window after next-due are penalized
before the grade is applied. Interval and ease are always clamped to their
configured bounds.
"""

from __future__ import annotations

import math
from collections.abc import Iterable
from dataclasses import dataclass, fields, replace
from datetime import datetime, timedelta
from typing import Any

from loguru import logger

from src.scheduling.clock import ensure_utc
from src.scheduling.errors import InvariantViolationError
from src.scheduling.models import Grade, ReviewSchedule, StudyRecord

# =============================================================================
# CONFIGURATION
# =============================================================================

# Ease thresholds for the difficulty classification
ADVANCED_EASE_THRESHOLD = 1.8
INTERMEDIATE_EASE_THRESHOLD = 2.3

# Floating point slack when checking bounds
_EPSILON = 1e-9


@dataclass(frozen=True)
class PolicyConfig:
    """Tunable constants of the interval policy."""

    seed_interval: float = 1.0
    seed_ease: float = 2.5
    min_interval: float = 1.0
    max_interval: float = 365.0
    min_ease: float = 1.3
    max_ease: float = 4.0
    failure_reset_threshold: int = 2
    again_ease_penalty: float = 0.2
    hard_interval_divisor: float = 1.2
    hard_ease_penalty: float = 0.15
    easy_bonus: float = 1.3
    easy_ease_bonus: float = 0.15
    late_grace_days: float = 1.0
    late_ease_penalty: float = 0.05
    late_interval_factor: float = 0.9

    def __post_init__(self):
        if not 0 < self.min_interval <= self.max_interval:
            raise ValueError("interval bounds must satisfy 0 < min_interval <= max_interval")
        if not 0 < self.min_ease <= self.max_ease:
            raise ValueError("ease bounds must satisfy 0 < min_ease <= max_ease")
        if not self.min_interval <= self.seed_interval <= self.max_interval:
            raise ValueError("seed_interval must lie within the interval bounds")
        if not self.min_ease <= self.seed_ease <= self.max_ease:
            raise ValueError("seed_ease must lie within the ease bounds")
        if self.failure_reset_threshold < 1:
            raise ValueError("failure_reset_threshold must be >= 1")
        if self.hard_interval_divisor <= 1.0:
            raise ValueError("hard_interval_divisor must be > 1.0")
        if self.easy_bonus <= 1.0:
            raise ValueError("easy_bonus must be > 1.0")
        if not 0 < self.late_interval_factor <= 1.0:
            raise ValueError("late_interval_factor must be in (0, 1]")
        if min(self.again_ease_penalty, self.hard_ease_penalty, self.easy_ease_bonus,
               self.late_ease_penalty, self.late_grace_days) < 0:
            raise ValueError("penalties, bonuses and grace must be non-negative")

    @classmethod
    def from_dict(cls, values: dict[str, Any]) -> PolicyConfig:
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in values.items() if k in known})

    @classmethod
    def from_settings(cls, settings) -> PolicyConfig:
        return cls.from_dict(settings.get_policy_config())


# =============================================================================
# STATE
# =============================================================================


@dataclass(frozen=True)
class RetentionState:
    """The numeric part of a schedule the policy works on."""

    interval_days: float
    ease_factor: float
    next_due_at: datetime
    consecutive_failures: int = 0
    review_count: int = 0
    lapse_count: int = 0
    last_reviewed_at: datetime | None = None

    @classmethod
    def of(cls, schedule: ReviewSchedule) -> RetentionState:
        return cls(
            interval_days=schedule.interval_days,
            ease_factor=schedule.ease_factor,
            next_due_at=schedule.next_due_at,
            consecutive_failures=schedule.consecutive_failures,
            review_count=schedule.review_count,
            lapse_count=schedule.lapse_count,
            last_reviewed_at=schedule.last_reviewed_at,
        )

    def apply_to(self, schedule: ReviewSchedule) -> ReviewSchedule:
        """Copy this state onto a schedule (identity and version untouched)."""
        return schedule.with_changes(
            interval_days=self.interval_days,
            ease_factor=self.ease_factor,
            next_due_at=self.next_due_at,
            consecutive_failures=self.consecutive_failures,
            review_count=self.review_count,
            lapse_count=self.lapse_count,
            last_reviewed_at=self.last_reviewed_at,
        )


@dataclass(frozen=True)
class PolicyOutcome:
    """Result of one policy computation."""

    state: RetentionState
    grade: Grade
    lapse: bool = False  # Again after at least one prior review
    late: bool = False  # Lateness penalty applied
    interval_reset: bool = False  # Failure threshold reached


# =============================================================================
# POLICY
# =============================================================================


class IntervalPolicy:
    """
    SM-2 style interval calculator.

    Total over valid input: any grade applied to any in-bounds state (or to
    no state at all) yields an in-bounds state.
    """

    def __init__(self, config: PolicyConfig | None = None):
        self.config = config or PolicyConfig()

    def seed_state(self, now: datetime) -> RetentionState:
        """State of an item seen for the first time; due immediately."""
        return RetentionState(
            interval_days=self.config.seed_interval,
            ease_factor=self.config.seed_ease,
            next_due_at=ensure_utc(now),
        )

    def new_schedule(self, student_id: str, item_id: str, now: datetime) -> ReviewSchedule:
        """Unsaved schedule holding seed values."""
        now = ensure_utc(now)
        seed = self.seed_state(now)
        return ReviewSchedule(
            student_id=student_id,
            item_id=item_id,
            interval_days=seed.interval_days,
            ease_factor=seed.ease_factor,
            next_due_at=seed.next_due_at,
            created_at=now,
            updated_at=now,
        )

    def compute_next(
        self,
        state: RetentionState | None,
        grade: Grade | int,
        reviewed_at: datetime,
    ) -> PolicyOutcome:
        """
        Apply one feedback grade.

        Args:
            state: Current state, or None for a first-ever review
            grade: Feedback grade
            reviewed_at: Instant of the review (from the injected clock)

        Returns:
            PolicyOutcome with the new state and lapse/late markers

        Raises:
            InvariantViolationError: stored state or result outside the bounds
        """
        cfg = self.config
        grade = Grade(grade)
        reviewed_at = ensure_utc(reviewed_at)

        if state is None:
            state = self.seed_state(reviewed_at)
        else:
            self._check_bounds(state, "input")

        interval = state.interval_days
        ease = state.ease_factor
        late = False

        # Lateness only exists once the item has a real schedule
        if state.review_count > 0 and reviewed_at > state.next_due_at + timedelta(days=cfg.late_grace_days):
            late = True
            ease = max(cfg.min_ease, ease - cfg.late_ease_penalty)
            interval = max(cfg.min_interval, interval * cfg.late_interval_factor)

        failures = 0
        lapse = False
        reset = False
        lapse_count = state.lapse_count

        if grade == Grade.AGAIN:
            failures = state.consecutive_failures + 1
            lapse = state.review_count > 0
            if lapse:
                lapse_count += 1
            if failures >= cfg.failure_reset_threshold:
                reset = True
                interval = cfg.min_interval
                ease = max(cfg.min_ease, ease - cfg.again_ease_penalty)
        elif grade == Grade.HARD:
            interval = max(cfg.min_interval, interval / cfg.hard_interval_divisor)
            ease = max(cfg.min_ease, ease - cfg.hard_ease_penalty)
        elif grade == Grade.GOOD:
            interval = interval * ease
        else:
            interval = interval * ease * cfg.easy_bonus
            ease = min(cfg.max_ease, ease + cfg.easy_ease_bonus)

        interval = min(cfg.max_interval, max(cfg.min_interval, interval))
        # Again always brings the item back after the minimum interval
        step = cfg.min_interval if grade == Grade.AGAIN else interval

        new_state = RetentionState(
            interval_days=interval,
            ease_factor=ease,
            next_due_at=reviewed_at + timedelta(days=step),
            consecutive_failures=failures,
            review_count=state.review_count + 1,
            lapse_count=lapse_count,
            last_reviewed_at=reviewed_at,
        )
        self._check_bounds(new_state, "result")

        return PolicyOutcome(
            state=new_state,
            grade=grade,
            lapse=lapse,
            late=late,
            interval_reset=reset,
        )

    def replay(self, records: Iterable[StudyRecord]) -> RetentionState | None:
        """Rebuild a state by applying logged grades in review order."""
        state: RetentionState | None = None
        for record in sorted(records, key=lambda r: r.reviewed_at):
            state = self.compute_next(state, record.grade, record.reviewed_at).state
        return state

    def _check_bounds(self, state: RetentionState, stage: str) -> None:
        cfg = self.config
        problems = []
        if not math.isfinite(state.ease_factor) or not (
            cfg.min_ease - _EPSILON <= state.ease_factor <= cfg.max_ease + _EPSILON
        ):
            problems.append(f"ease_factor={state.ease_factor}")
        if not math.isfinite(state.interval_days) or not (
            cfg.min_interval - _EPSILON <= state.interval_days <= cfg.max_interval + _EPSILON
        ):
            problems.append(f"interval_days={state.interval_days}")
        if problems:
            logger.error(f"Interval policy invariant violated ({stage}): {', '.join(problems)}")
            raise InvariantViolationError(
                f"retention state out of bounds ({stage}): {', '.join(problems)}",
                operation="compute_next",
            )


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================


def difficulty_level(ease_factor: float) -> str:
    """Classify an item by its ease factor: beginner, intermediate or advanced."""
    if ease_factor <= ADVANCED_EASE_THRESHOLD:
        return "advanced"
    if ease_factor <= INTERMEDIATE_EASE_THRESHOLD:
        return "intermediate"
    return "beginner"


def retention_probability(schedule: ReviewSchedule, now: datetime) -> float:
    """
    Estimate current recall probability with an exponential forgetting curve.

    Clamped to [0.1, 1.0]; an item reviewed just now (or never) scores 1.0.
    """
    if schedule.last_reviewed_at is None:
        return 1.0
    days_since = (ensure_utc(now) - schedule.last_reviewed_at).total_seconds() / 86400
    if days_since <= 0:
        return 1.0
    retention = math.exp(-days_since / max(schedule.interval_days, _EPSILON))
    return max(0.1, min(1.0, retention))


def with_config(policy: IntervalPolicy, **overrides: Any) -> IntervalPolicy:
    """Copy of a policy with some constants replaced."""
    return IntervalPolicy(replace(policy.config, **overrides))
