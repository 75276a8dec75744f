"""
Quiz engine core logic for Quiz Whiz.
Handles answer normalization, scoring, content validation and the periodic
stale-session sweep.
"""
import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from .models import DEFAULT_CHOICE_LABELS, Question, Quiz, Session

# Set up logger for sweep operations
logger = logging.getLogger(__name__)


class SweepLifecycleLogger:
    """Structured logging for sweep lifecycle events."""

    @staticmethod
    def log_sweep_started(interval: float) -> None:
        logger.info(
            f"Sweep lifecycle: STARTED - every {interval:.0f}s",
            extra={
                'event_type': 'sweep_started',
                'interval': interval,
                'timestamp': time.time()
            }
        )

    @staticmethod
    def log_sweep_run(expired_count: int, duration: float) -> None:
        """Log a completed sweep pass."""
        level = logging.INFO if expired_count else logging.DEBUG
        logger.log(
            level,
            f"Sweep lifecycle: RUN - expired {expired_count} sessions in {duration:.3f}s",
            extra={
                'event_type': 'sweep_run',
                'expired_count': expired_count,
                'duration': duration,
                'timestamp': time.time()
            }
        )

    @staticmethod
    def log_sweep_error(error_message: str) -> None:
        logger.error(
            f"Sweep lifecycle: ERROR - {error_message}",
            extra={
                'event_type': 'sweep_error',
                'error_message': error_message,
                'timestamp': time.time()
            }
        )

    @staticmethod
    def log_sweep_stopped(runs: int) -> None:
        logger.info(
            f"Sweep lifecycle: STOPPED after {runs} runs",
            extra={
                'event_type': 'sweep_stopped',
                'runs': runs,
                'timestamp': time.time()
            }
        )


class SweepTimer:
    """Runs a sweep callback on a fixed interval in a background task."""

    def __init__(self, sweep_callback: Callable[[], Awaitable[List[str]]], interval: float):
        """
        Initialize the timer.

        Args:
            sweep_callback: Coroutine function returning the expired session ids
            interval: Seconds between sweeps
        """
        self._sweep_callback = sweep_callback
        self._interval = interval
        self._task: Optional[asyncio.Task] = None
        self._runs = 0
        self._last_expired = 0

    async def _run(self) -> None:
        SweepLifecycleLogger.log_sweep_started(self._interval)
        try:
            while True:
                await asyncio.sleep(self._interval)
                await self.run_once()
        except asyncio.CancelledError:
            SweepLifecycleLogger.log_sweep_stopped(self._runs)
            raise

    async def run_once(self) -> int:
        """
        Run a single sweep. Errors are logged and the timer keeps running.

        Returns:
            Number of sessions expired by this pass
        """
        started = time.time()
        try:
            expired = await self._sweep_callback()
        except Exception as e:
            SweepLifecycleLogger.log_sweep_error(str(e))
            return 0

        self._runs += 1
        self._last_expired = len(expired)
        SweepLifecycleLogger.log_sweep_run(self._last_expired, time.time() - started)
        return self._last_expired

    def start(self) -> None:
        """Start the background task; a running timer is left untouched."""
        if self.is_running:
            logger.debug("Sweep timer already running")
            return
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Cancel the background task and wait for it to finish."""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        finally:
            self._task = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def runs(self) -> int:
        return self._runs


class QuizEngine:
    """Pure quiz rules: labels, correctness, scoring and content validation."""

    def __init__(self, choice_labels: Iterable[str] = DEFAULT_CHOICE_LABELS):
        """
        Initialize the quiz engine.

        Args:
            choice_labels: Allowed answer labels, e.g. ('A', 'B', 'C', 'D')
        """
        self.choice_labels = tuple(label.upper() for label in choice_labels)

    def normalize_label(self, label: Any) -> Optional[str]:
        """
        Normalize a submitted label.

        Returns:
            The uppercase label, or None if it is not in the configured alphabet
        """
        if not isinstance(label, str):
            return None
        normalized = label.strip().upper()
        return normalized if normalized in self.choice_labels else None

    def is_correct(self, question: Question, label: str) -> bool:
        return label == question.correct_label.strip().upper()

    def count_correct(self, quiz: Quiz, answers: Dict[int, str]) -> int:
        """Recount correct answers against the quiz's current questions."""
        correct = 0
        for position, label in answers.items():
            question = quiz.question_at(position)
            if question is not None and self.is_correct(question, label):
                correct += 1
        return correct

    @staticmethod
    def calculate_score(correct_count: int, total_answered: int) -> int:
        """
        Integer percentage rounded half-up; zero answers score 0.

        Uses integer arithmetic so that e.g. 1/8 (12.5%) becomes 13.
        """
        if total_answered <= 0:
            return 0
        return (200 * correct_count + total_answered) // (2 * total_answered)

    def score_session(self, quiz: Quiz, session: Session) -> Dict[str, int]:
        correct = self.count_correct(quiz, session.answers)
        total = len(session.answers)
        return {
            'score': self.calculate_score(correct, total),
            'correct_count': correct,
            'total_answered': total
        }

    def validate_question(self, question: Question) -> List[str]:
        """
        Check a question's shape.

        Returns:
            List of issues; empty when the question is well formed
        """
        issues = []
        where = f"Question {question.position}"
        if not question.prompt or not question.prompt.strip():
            issues.append(f"{where} has an empty prompt")

        labels = {str(label).upper() for label in (question.choices or {})}
        missing = [label for label in self.choice_labels if label not in labels]
        extra = sorted(labels - set(self.choice_labels))
        if missing:
            issues.append(f"{where} is missing choices {', '.join(missing)}")
        if extra:
            issues.append(f"{where} has unexpected choices {', '.join(extra)}")
        for label, text in (question.choices or {}).items():
            if not isinstance(text, str) or not text.strip():
                issues.append(f"{where} choice {label} is empty")

        if self.normalize_label(question.correct_label) is None:
            issues.append(f"{where} has invalid correct label {question.correct_label!r}")
        return issues

    def validate_questions(self, questions: List[Question]) -> List[str]:
        """
        Validate a full question list: non-empty, positions 1..N in order,
        each question well formed.
        """
        if not questions:
            return ["Quiz has no questions"]

        issues = []
        for expected, question in enumerate(questions, start=1):
            if question.position != expected:
                issues.append(
                    f"Question at index {expected - 1} has position {question.position}, expected {expected}"
                )
            issues.extend(self.validate_question(question))
        return issues

    @staticmethod
    def determine_difficulty(prompt: str) -> str:
        text = prompt.lower()
        if any(word in text for word in ('analyze', 'evaluate', 'compare')):
            return 'hard'
        if any(word in text for word in ('explain', 'describe', 'why')):
            return 'medium'
        return 'easy'

    @staticmethod
    def performance_tier(score: int) -> str:
        if score >= 80:
            return "🌟 Excellent work! You're doing great! 🎉"
        if score >= 60:
            return "👍 Good job! Keep practicing to improve! 💪"
        return "📚 Don't worry! Review the material and try again next time! 🔄"
