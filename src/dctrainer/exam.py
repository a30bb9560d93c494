"""Weighted practice-exam selection, grading, and countdown timing."""

from __future__ import annotations

import logging
import math
import random
import time
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from typing import TypeVar

from .models import DOMAIN_IDS, ExamQuestion

logger = logging.getLogger(__name__)

T = TypeVar("T")
Answer = int | bool | Sequence[int]

DEFAULT_QUESTION_COUNT = 35
DEFAULT_PASSING_SCORE = 70

DOMAIN_WEIGHTS: dict[str, float] = {
    "domain1": 0.31,
    "domain2": 0.05,
    "domain3": 0.19,
    "domain4": 0.33,
    "domain5": 0.12,
}

DOMAIN_NAMES: dict[str, str] = {
    "domain1": "Platform Bring-Up",
    "domain2": "Accelerator Configuration",
    "domain3": "Base Infrastructure",
    "domain4": "Validation & Testing",
    "domain5": "Troubleshooting",
}

MINIMUM_QUOTA_DOMAIN = "domain2"
LARGEST_DOMAIN = max(DOMAIN_WEIGHTS, key=lambda domain: DOMAIN_WEIGHTS[domain])


@dataclass(frozen=True)
class ExamSelection:
    """Questions picked for one exam with the quota bookkeeping behind them."""

    questions: tuple[ExamQuestion, ...]
    quotas: dict[str, int]
    shortfalls: dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class DomainPerformance:
    """Per-domain slice of a graded exam."""

    domain_name: str
    questions_total: int
    questions_correct: int
    percentage: int
    weight: int


@dataclass(frozen=True)
class QuestionResult:
    """Grading outcome for one question."""

    question_id: str
    correct: bool
    user_answer: object
    correct_answer: object
    points: int


@dataclass(frozen=True)
class ExamBreakdown:
    """Graded exam report."""

    total_points: int
    earned_points: int
    percentage: int
    by_domain: dict[str, DomainPerformance]
    question_results: tuple[QuestionResult, ...]
    time_spent: int = 0

    def to_dict(self) -> dict[str, object]:
        """Return JSON-ready data for persistence."""
        return {
            "total_points": self.total_points,
            "earned_points": self.earned_points,
            "percentage": self.percentage,
            "time_spent": self.time_spent,
            "by_domain": {
                domain: {
                    "domain_name": item.domain_name,
                    "questions_total": item.questions_total,
                    "questions_correct": item.questions_correct,
                    "percentage": item.percentage,
                    "weight": item.weight,
                }
                for domain, item in self.by_domain.items()
            },
            "question_results": [
                {
                    "question_id": item.question_id,
                    "correct": item.correct,
                    "user_answer": _jsonable(item.user_answer),
                    "correct_answer": _jsonable(item.correct_answer),
                    "points": item.points,
                }
                for item in self.question_results
            ],
        }


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _percent(part: int, whole: int) -> int:
    return _round_half_up(100 * part / whole) if whole > 0 else 0


def _jsonable(value: object) -> object:
    if isinstance(value, tuple):
        return list(value)
    return value


def domain_quotas(total: int = DEFAULT_QUESTION_COUNT) -> dict[str, int]:
    """Return per-domain question counts summing exactly to total.

    Each domain gets its rounded share, the smallest domain never drops to
    zero, and whatever rounding leaves over or under lands on the largest
    domain.
    """
    if total < 1:
        raise ValueError("Exam size must be at least 1.")
    quotas = {domain: _round_half_up(total * weight) for domain, weight in DOMAIN_WEIGHTS.items()}
    quotas[MINIMUM_QUOTA_DOMAIN] = max(1, quotas[MINIMUM_QUOTA_DOMAIN])
    quotas[LARGEST_DOMAIN] += total - sum(quotas.values())
    return quotas


def shuffle(items: Iterable[T], rng: random.Random | None = None) -> list[T]:
    """Return a Fisher-Yates shuffled copy."""
    chooser = rng or random.Random()
    shuffled = list(items)
    for i in range(len(shuffled) - 1, 0, -1):
        j = chooser.randint(0, i)
        shuffled[i], shuffled[j] = shuffled[j], shuffled[i]
    return shuffled


def select_exam_questions(
    questions: Iterable[ExamQuestion],
    total: int = DEFAULT_QUESTION_COUNT,
    rng: random.Random | None = None,
) -> ExamSelection:
    """Pick a domain-weighted random exam.

    Domains short of their quota contribute what they have; the shortfall is
    reported rather than raised, so the exam may hold fewer than total.
    """
    chooser = rng or random.Random()
    by_domain: dict[str, list[ExamQuestion]] = {domain: [] for domain in DOMAIN_IDS}
    for question in questions:
        by_domain[question.domain].append(question)

    quotas = domain_quotas(total)
    shortfalls: dict[str, int] = {}
    selected: list[ExamQuestion] = []
    for domain in DOMAIN_IDS:
        available = by_domain[domain]
        needed = quotas[domain]
        if len(available) < needed:
            shortfalls[domain] = needed - len(available)
            logger.warning("Not enough questions for %s: have %d, need %d", domain, len(available), needed)
        selected.extend(shuffle(available, chooser)[: min(needed, len(available))])

    return ExamSelection(questions=tuple(shuffle(selected, chooser)), quotas=quotas, shortfalls=shortfalls)


def is_answer_correct(question: ExamQuestion, answer: Answer) -> bool:
    """Grade one answer; multi-select compares as order-independent sets."""
    expected = question.correct_answer
    if question.type == "multiple-select":
        if isinstance(answer, int | bool) or isinstance(expected, int):
            return False
        given = list(answer)
        if len(given) != len(expected):
            return False
        return sorted(given) == sorted(expected)
    if isinstance(answer, bool):
        if question.type != "true-false":
            return False
        # choice 0 is "True", matching how the loader stores boolean answers
        answer = 0 if answer else 1
    if not isinstance(answer, int):
        return False
    return answer == expected


def calculate_exam_score(questions: Sequence[ExamQuestion], answers: Mapping[str, Answer]) -> ExamBreakdown:
    """Grade an exam without touching the question bank."""
    total_points = 0
    earned_points = 0
    totals = dict.fromkeys(DOMAIN_IDS, 0)
    correct_counts = dict.fromkeys(DOMAIN_IDS, 0)
    results: list[QuestionResult] = []

    for question in questions:
        total_points += question.points
        totals[question.domain] += 1
        user_answer = answers.get(question.id)
        correct = user_answer is not None and is_answer_correct(question, user_answer)
        if correct:
            earned_points += question.points
            correct_counts[question.domain] += 1
        results.append(
            QuestionResult(
                question_id=question.id,
                correct=correct,
                user_answer=user_answer,
                correct_answer=question.correct_answer,
                points=question.points,
            )
        )

    by_domain = {
        domain: DomainPerformance(
            domain_name=DOMAIN_NAMES[domain],
            questions_total=totals[domain],
            questions_correct=correct_counts[domain],
            percentage=_percent(correct_counts[domain], totals[domain]),
            weight=_round_half_up(DOMAIN_WEIGHTS[domain] * 100),
        )
        for domain in DOMAIN_IDS
    }
    return ExamBreakdown(
        total_points=total_points,
        earned_points=earned_points,
        percentage=_percent(earned_points, total_points),
        by_domain=by_domain,
        question_results=tuple(results),
    )


def is_exam_passed(breakdown: ExamBreakdown, passing_score: int = DEFAULT_PASSING_SCORE) -> bool:
    """Return whether the overall percentage clears the passing score."""
    return breakdown.percentage >= passing_score


def weak_domains(breakdown: ExamBreakdown, threshold: int = DEFAULT_PASSING_SCORE) -> list[DomainPerformance]:
    """Return domains below threshold, weakest first."""
    weak = [item for item in breakdown.by_domain.values() if item.percentage < threshold]
    return sorted(weak, key=lambda item: item.percentage)


def exam_result_summary(
    breakdown: ExamBreakdown, passed: bool, passing_score: int = DEFAULT_PASSING_SCORE
) -> str:
    """Render a plain-text result summary."""
    minutes, seconds = divmod(breakdown.time_spent, 60)
    lines = [
        "Practice exam passed." if passed else "Practice exam not passed.",
        "",
        f"Score: {breakdown.earned_points}/{breakdown.total_points} points ({breakdown.percentage}%)",
        f"Passing score: {passing_score}%",
        f"Time: {minutes}m {seconds}s",
        "",
        "Performance by domain:",
    ]
    for item in breakdown.by_domain.values():
        mark = "+" if item.percentage >= passing_score else "-"
        lines.append(
            f"  {mark} {item.domain_name}: {item.questions_correct}/{item.questions_total} ({item.percentage}%)"
        )
    return "\n".join(lines)


class ExamTimer:
    """Countdown driven by an external periodic tick rather than a thread."""

    def __init__(self, duration_seconds: int, clock: Callable[[], float] = time.monotonic) -> None:
        """Create an idle timer."""
        self.duration_seconds = duration_seconds
        self._clock = clock
        self._started_at: float | None = None
        self._running = False
        self._expired = False
        self._on_tick: Callable[[int], None] | None = None
        self._on_expire: Callable[[], None] | None = None

    @property
    def running(self) -> bool:
        """Return whether ticks are currently processed."""
        return self._running

    @property
    def expired(self) -> bool:
        """Return whether the countdown reached zero."""
        return self._expired

    def start(
        self,
        on_tick: Callable[[int], None] | None = None,
        on_expire: Callable[[], None] | None = None,
    ) -> None:
        """Start or resume ticking; elapsed time counts from the first start."""
        if self._started_at is None:
            self._started_at = self._clock()
        self._on_tick = on_tick
        self._on_expire = on_expire
        self._running = not self._expired

    def stop(self) -> None:
        """Stop ticking; safe to call repeatedly."""
        self._running = False

    def tick(self) -> int | None:
        """Process one poll; fires on_tick, or on_expire once at zero."""
        if not self._running:
            return None
        remaining = self.remaining()
        if remaining <= 0:
            self.stop()
            self._expired = True
            if self._on_expire is not None:
                self._on_expire()
        elif self._on_tick is not None:
            self._on_tick(remaining)
        return remaining

    def elapsed(self) -> int:
        """Return whole seconds since the first start."""
        if self._started_at is None:
            return 0
        return int(self._clock() - self._started_at)

    def remaining(self) -> int:
        """Return whole seconds left, never negative."""
        return max(0, self.duration_seconds - self.elapsed())

    def format_remaining(self) -> str:
        """Return remaining time as M:SS."""
        minutes, seconds = divmod(self.remaining(), 60)
        return f"{minutes}:{seconds:02d}"


class ExamSession:
    """One learner's timed attempt over a fixed question selection."""

    def __init__(self, selection: ExamSelection, timer: ExamTimer) -> None:
        """Bind questions and timer; answers start empty."""
        self.selection = selection
        self.timer = timer
        self.answers: dict[str, Answer] = {}
        self._question_ids = {question.id for question in selection.questions}
        self._breakdown: ExamBreakdown | None = None

    @property
    def questions(self) -> tuple[ExamQuestion, ...]:
        """Return questions in presentation order."""
        return self.selection.questions

    @property
    def finished(self) -> bool:
        """Return whether the attempt has been graded."""
        return self._breakdown is not None

    def start(self, on_expire: Callable[[], None] | None = None) -> None:
        """Start the countdown."""
        self.timer.start(on_expire=on_expire)

    def answer(self, question_id: str, value: Answer) -> bool:
        """Record an answer; returns False once time is up or the exam is graded."""
        if question_id not in self._question_ids:
            raise KeyError(question_id)
        self.timer.tick()
        if self.finished or self.timer.expired:
            return False
        self.answers[question_id] = value
        return True

    def finish(self) -> ExamBreakdown:
        """Stop the clock and grade; repeated calls return the same breakdown."""
        if self._breakdown is None:
            self.timer.stop()
            breakdown = calculate_exam_score(self.selection.questions, self.answers)
            self._breakdown = replace(breakdown, time_spent=min(self.timer.elapsed(), self.timer.duration_seconds))
        return self._breakdown
