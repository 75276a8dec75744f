"""
Quiz session controller for Quiz Whiz.
Owns the session state machine: creation, answer submission, finalization,
expiry and dispatch to cohorts.
"""
import asyncio
import logging
import time
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from .config_manager import ConfigManager
from .data_manager import DataManager
from .database import generate_id
from .exceptions import (
    AnswerAlreadyRecorded,
    DeliveryError,
    DuplicateSessionError,
    InvalidAnswerFormat,
    InvalidQuizContent,
    QuizClosedError,
    QuizNotFound,
    QuizWhizError,
    RecipientNotFound,
    SessionAlreadyFinalizing,
    SessionExpired,
    SessionNotFinished,
    SessionNotFound,
)
from .models import (
    AnswerResult,
    DispatchFailure,
    DispatchReport,
    FinalizeResult,
    Question,
    Quiz,
    QuizStatus,
    Recipient,
    Session,
    SessionStatus,
)
from .quiz_engine import QuizEngine

# Renders the first question of a freshly created session to its recipient
QuestionPresenter = Callable[[Recipient, Quiz, Session], Awaitable[None]]


class QuizController:
    """
    Orchestrates quiz sessions for every registered recipient.

    The database is the source of truth. The controller caches sessions by id
    (evicted on any terminal status) and quizzes once they are active, since
    active quizzes never change. Every mutation of a session runs under a
    per-session asyncio.Lock and is written with a conditional update, so
    duplicate inputs for the same question record exactly one answer.
    """

    def __init__(
        self,
        data_manager: DataManager,
        config_manager: ConfigManager,
        presenter: Optional[QuestionPresenter] = None
    ):
        """
        Initialize the quiz controller.

        Args:
            data_manager: Repository for all stored entities
            config_manager: Source of quiz policy settings
            presenter: Optional coroutine used to deliver the first question
        """
        self.logger = logging.getLogger(__name__)
        self.data_manager = data_manager
        self.config_manager = config_manager
        self.settings = config_manager.get_quiz_settings()
        self.quiz_engine = QuizEngine(self.settings.choice_labels)
        self.presenter = presenter

        self._session_cache: Dict[str, Session] = {}
        self._quiz_cache: Dict[str, Quiz] = {}
        self._session_locks: Dict[str, asyncio.Lock] = {}

        self.logger.info("QuizController initialized")

    def set_presenter(self, presenter: Optional[QuestionPresenter]) -> None:
        self.presenter = presenter

    @property
    def session_timeout(self) -> timedelta:
        return timedelta(minutes=self.settings.session_timeout_minutes)

    @property
    def sweep_timeout(self) -> timedelta:
        return timedelta(hours=self.settings.sweep_timeout_hours)

    async def _run(self, func: Callable[..., Any], *args) -> Any:
        """Run a blocking repository call off the event loop."""
        return await asyncio.to_thread(func, *args)

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._session_locks.get(session_id)
        if lock is None:
            lock = self._session_locks[session_id] = asyncio.Lock()
        return lock

    def _evict(self, session_id: str) -> None:
        self._session_cache.pop(session_id, None)
        self._session_locks.pop(session_id, None)

    def _remember(self, session: Session) -> None:
        if session.is_active:
            self._session_cache[session.id] = session
        else:
            self._evict(session.id)

    async def _observed_position(self, session_id: str) -> Optional[int]:
        """Position of the session as seen before queueing on its lock."""
        cached = self._session_cache.get(session_id)
        if cached is not None:
            return cached.position
        session = await self._run(self.data_manager.get_session, session_id)
        return session.position if session is not None else None

    # Quizzes

    async def get_quiz(self, quiz_id: str) -> Quiz:
        """
        Load a quiz with its questions.

        Raises:
            QuizNotFound: If the quiz does not exist
        """
        quiz = self._quiz_cache.get(quiz_id)
        if quiz is not None:
            return quiz

        quiz = await self._run(self.data_manager.get_quiz, quiz_id)
        if quiz is None:
            raise QuizNotFound(f"Quiz {quiz_id} not found")
        if quiz.status is not QuizStatus.DRAFT:
            self._quiz_cache[quiz_id] = quiz
        return quiz

    async def activate_quiz(self, quiz_id: str) -> Quiz:
        """
        Validate a quiz and make it active so it can be dispatched.

        Raises:
            QuizNotFound: If the quiz does not exist
            QuizClosedError: If the quiz is closed
            InvalidQuizContent: If any question is malformed
        """
        quiz = await self.get_quiz(quiz_id)
        if quiz.status is QuizStatus.CLOSED:
            raise QuizClosedError(f"Quiz {quiz_id} is closed")

        issues = self.quiz_engine.validate_questions(quiz.questions)
        if issues:
            self.logger.warning(f"Quiz {quiz_id} rejected: {'; '.join(issues)}")
            raise InvalidQuizContent(f"Quiz {quiz_id} has invalid content", issues=issues)

        if quiz.status is QuizStatus.DRAFT:
            await self._run(self.data_manager.update_quiz_status, quiz_id, QuizStatus.ACTIVE)
            quiz.status = QuizStatus.ACTIVE
            self._quiz_cache[quiz_id] = quiz
            self.logger.info(
                f"Quiz {quiz_id} activated with {quiz.total_questions} questions",
                extra={'event_type': 'quiz_activated', 'quiz_id': quiz_id}
            )
        return quiz

    async def close_quiz(self, quiz_id: str) -> Quiz:
        quiz = await self.get_quiz(quiz_id)
        await self._run(self.data_manager.update_quiz_status, quiz_id, QuizStatus.CLOSED)
        quiz.status = QuizStatus.CLOSED
        self._quiz_cache[quiz_id] = quiz
        self.logger.info(f"Quiz {quiz_id} closed")
        return quiz

    # Session lifecycle

    async def create_session(self, recipient_id: str, quiz_id: str) -> Session:
        """
        Create a session for a recipient and deliver its first question.

        Raises:
            RecipientNotFound: If the recipient does not exist
            QuizNotFound, QuizClosedError, InvalidQuizContent: If the quiz cannot be taken
            DuplicateSessionError: If the pair already has an active session;
                the existing session is attached for resumption
            DeliveryError: If the first question could not be delivered; the
                new session is abandoned
        """
        recipient = await self._run(self.data_manager.get_recipient, recipient_id)
        if recipient is None:
            raise RecipientNotFound(f"Recipient {recipient_id} not found")
        quiz = await self.activate_quiz(quiz_id)
        return await self._create_session(recipient, quiz)

    async def _create_session(self, recipient: Recipient, quiz: Quiz) -> Session:
        session = Session(
            id=generate_id('SES'),
            recipient_id=recipient.id,
            quiz_id=quiz.id,
            total_questions=quiz.total_questions,
            start_time=datetime.now()
        )
        # The check-and-insert runs in one transaction backed by a partial unique index
        existing = await self._run(self.data_manager.insert_session, session)
        if existing is not None:
            self.logger.info(
                f"Recipient {recipient.id} already has active session {existing.id} for quiz {quiz.id}"
            )
            raise DuplicateSessionError(
                f"Active session {existing.id} exists for recipient {recipient.id} and quiz {quiz.id}",
                existing_session=existing
            )

        self._remember(session)
        self.logger.info(
            f"Created session {session.id}: recipient={recipient.id}, quiz={quiz.id}, "
            f"questions={quiz.total_questions}",
            extra={
                'event_type': 'session_created',
                'session_id': session.id,
                'recipient_id': recipient.id,
                'quiz_id': quiz.id,
                'timestamp': time.time()
            }
        )

        if self.presenter is not None:
            try:
                await self.presenter(recipient, quiz, session)
            except Exception as e:
                self.logger.error(f"Failed to deliver session {session.id} to {recipient.id}: {e}")
                await self._run(self.data_manager.set_session_status, session.id, SessionStatus.ABANDONED)
                session.status = SessionStatus.ABANDONED
                self._evict(session.id)
                raise DeliveryError(f"Could not deliver quiz to recipient {recipient.id}: {e}") from e
        return session

    async def _ensure_answerable(self, session: Session) -> None:
        """
        Raise unless the session can accept an answer. A session older than
        the per-session timeout is moved to expired on the way.
        """
        if session.status in (SessionStatus.EXPIRED, SessionStatus.ABANDONED):
            raise SessionExpired(f"Session {session.id} is {session.status.value}")
        if session.status is SessionStatus.COMPLETED:
            raise SessionAlreadyFinalizing(f"Session {session.id} is already completed")

        if session.start_time < datetime.now() - self.session_timeout:
            if await self._run(self.data_manager.set_session_status, session.id, SessionStatus.EXPIRED):
                self.logger.info(
                    f"Session {session.id} expired after {self.settings.session_timeout_minutes} minutes",
                    extra={'event_type': 'session_expired', 'session_id': session.id}
                )
            session.status = SessionStatus.EXPIRED
            self._evict(session.id)
            raise SessionExpired(f"Session {session.id} timed out")

        if session.awaiting_finalization:
            raise SessionAlreadyFinalizing(
                f"Session {session.id} answered all {session.total_questions} questions"
            )

    async def submit_answer(
        self,
        session_id: str,
        label: str,
        expected_position: Optional[int] = None
    ) -> AnswerResult:
        """
        Record an answer for the session's current question and advance it.

        Args:
            session_id: Session to answer
            label: Submitted label, case-insensitive
            expected_position: Position the answer was meant for; when it no
                longer matches, the answer is a duplicate and is rejected.
                Defaults to the position observed when the call arrives, so
                concurrent duplicates never advance the session twice

        Raises:
            SessionNotFound: Unknown session
            SessionExpired: Session expired, timed out or was abandoned
            SessionAlreadyFinalizing: Every question is answered already
            InvalidAnswerFormat: Label outside the configured alphabet; the
                session is left untouched
            AnswerAlreadyRecorded: Duplicate answer for a past position
        """
        if expected_position is None:
            expected_position = await self._observed_position(session_id)

        async with self._lock_for(session_id):
            session = await self._run(self.data_manager.get_session, session_id)
            if session is None:
                self._evict(session_id)
                raise SessionNotFound(f"Session {session_id} not found")

            await self._ensure_answerable(session)

            normalized = self.quiz_engine.normalize_label(label)
            if normalized is None:
                raise InvalidAnswerFormat(
                    f"Label {label!r} is not one of {', '.join(self.quiz_engine.choice_labels)}"
                )

            if expected_position is not None and expected_position != session.position:
                raise AnswerAlreadyRecorded(
                    f"Session {session_id} is at position {session.position}, "
                    f"answer was for {expected_position}"
                )

            quiz = await self.get_quiz(session.quiz_id)
            question = quiz.question_at(session.position)
            if question is None:
                raise SessionAlreadyFinalizing(f"Session {session_id} has no question at {session.position}")

            is_correct = self.quiz_engine.is_correct(question, normalized)
            recorded = await self._run(
                self.data_manager.record_answer, session.id, session.position, normalized
            )
            if not recorded:
                # Another writer changed the session between our read and write
                current = await self._run(self.data_manager.get_session, session_id)
                if current is None:
                    raise SessionNotFound(f"Session {session_id} not found")
                await self._ensure_answerable(current)
                raise AnswerAlreadyRecorded(f"Position {session.position} of {session_id} already answered")

            session.answers[session.position] = normalized
            session.position += 1
            self._remember(session)

        self.logger.info(
            f"Session {session_id} answered question {question.position}: "
            f"{'correct' if is_correct else 'incorrect'}",
            extra={
                'event_type': 'session_advanced',
                'session_id': session_id,
                'position': session.position,
                'is_correct': is_correct,
                'timestamp': time.time()
            }
        )
        return AnswerResult(
            session=session,
            question=question,
            submitted_label=normalized,
            is_correct=is_correct
        )

    async def finalize(self, session_id: str, early_finish: bool = False) -> FinalizeResult:
        """
        Score a session and mark it completed.

        Idempotent: a completed session returns its stored score. Correctness
        is recounted from the stored questions, never from cached flags.

        Raises:
            SessionNotFound: Unknown session
            SessionExpired: Session expired or was abandoned
            SessionNotFinished: Unanswered questions remain and no early finish
                was requested
            PersistenceError: The completion could not be stored; the session
                stays active and finalize can be retried
        """
        async with self._lock_for(session_id):
            session = await self._run(self.data_manager.get_session, session_id)
            if session is None:
                self._evict(session_id)
                raise SessionNotFound(f"Session {session_id} not found")

            quiz = await self.get_quiz(session.quiz_id)
            if session.status is SessionStatus.COMPLETED:
                return self._stored_result(quiz, session)
            if session.status is not SessionStatus.ACTIVE:
                raise SessionExpired(f"Session {session_id} is {session.status.value}")
            if not session.awaiting_finalization and not early_finish:
                raise SessionNotFinished(
                    f"Session {session_id} is at question {session.position}/{session.total_questions}"
                )

            stats = self.quiz_engine.score_session(quiz, session)
            end_time = datetime.now()
            completed = await self._run(
                self.data_manager.complete_session, session_id, stats['score'], end_time
            )
            if not completed:
                current = await self._run(self.data_manager.get_session, session_id)
                if current is not None and current.status is SessionStatus.COMPLETED:
                    self._evict(session_id)
                    return self._stored_result(quiz, current)
                raise SessionExpired(f"Session {session_id} left the active state before finalizing")

            session.status = SessionStatus.COMPLETED
            session.score = stats['score']
            session.end_time = end_time
            self._evict(session_id)

        self.logger.info(
            f"Session {session_id} completed with score {stats['score']}% "
            f"({stats['correct_count']}/{stats['total_answered']})",
            extra={
                'event_type': 'session_finalized',
                'session_id': session_id,
                'score': stats['score'],
                'early_finish': early_finish,
                'timestamp': time.time()
            }
        )
        return FinalizeResult(
            session=session,
            score=stats['score'],
            correct_count=stats['correct_count'],
            total_answered=stats['total_answered']
        )

    def _stored_result(self, quiz: Quiz, session: Session) -> FinalizeResult:
        return FinalizeResult(
            session=session,
            score=session.score if session.score is not None else 0,
            correct_count=self.quiz_engine.count_correct(quiz, session.answers),
            total_answered=len(session.answers)
        )

    async def abandon_session(self, session_id: str) -> bool:
        async with self._lock_for(session_id):
            abandoned = await self._run(
                self.data_manager.set_session_status, session_id, SessionStatus.ABANDONED
            )
            self._evict(session_id)
        if abandoned:
            self.logger.info(f"Session {session_id} abandoned")
        return abandoned

    async def expire_stale(
        self,
        now: Optional[datetime] = None,
        timeout: Optional[timedelta] = None
    ) -> List[str]:
        """
        Expire every active session that started more than ``timeout`` before ``now``.

        Idempotent. Answers arriving for a swept session fail with SessionExpired
        because answer writes are conditional on the active status.

        Returns:
            Ids of the sessions expired by this call
        """
        now = now or datetime.now()
        timeout = timeout if timeout is not None else self.sweep_timeout
        expired_ids = await self._run(self.data_manager.expire_sessions_started_before, now - timeout)
        for session_id in expired_ids:
            self._evict(session_id)

        if expired_ids:
            self.logger.info(
                f"Expired {len(expired_ids)} stale sessions",
                extra={'event_type': 'sessions_swept', 'count': len(expired_ids)}
            )
        return expired_ids

    # Dispatch

    async def dispatch_to_class(
        self,
        quiz_id: str,
        cohort_id: str,
        teacher_id: Optional[str] = None
    ) -> DispatchReport:
        """
        Start the quiz for every active member of a cohort.

        Members without a channel binding are skipped and listed separately;
        every other failure is recorded per recipient without stopping the batch.

        Raises:
            QuizNotFound, QuizClosedError, InvalidQuizContent: If the quiz cannot be sent
        """
        quiz = await self.activate_quiz(quiz_id)
        recipients = await self._run(self.data_manager.list_recipients_by_cohort, cohort_id)
        report = await self._dispatch(quiz, recipients)
        await self._log_distribution(report, cohort_id, teacher_id, 'class')
        return report

    async def dispatch_to_students(
        self,
        quiz_id: str,
        recipient_ids: Iterable[str],
        teacher_id: Optional[str] = None
    ) -> DispatchReport:
        """Start the quiz for an explicit list of recipients."""
        quiz = await self.activate_quiz(quiz_id)
        recipients: List[Recipient] = []
        failures: List[DispatchFailure] = []
        for recipient_id in dict.fromkeys(recipient_ids):
            recipient = await self._run(self.data_manager.get_recipient, recipient_id)
            if recipient is None:
                failures.append(DispatchFailure(recipient_id, 'recipient_not_found'))
            elif not recipient.is_active:
                failures.append(DispatchFailure(recipient_id, 'recipient_inactive'))
            else:
                recipients.append(recipient)

        report = await self._dispatch(quiz, recipients, failures)
        await self._log_distribution(report, None, teacher_id, 'selected_students')
        return report

    async def _dispatch(
        self,
        quiz: Quiz,
        recipients: List[Recipient],
        failures: Optional[List[DispatchFailure]] = None
    ) -> DispatchReport:
        failures = list(failures or [])
        report = DispatchReport(
            quiz_id=quiz.id,
            total_recipients=len(recipients) + len(failures),
            failures=failures
        )

        for recipient in recipients:
            if not recipient.has_channel:
                report.skipped.append(recipient.id)
                continue
            try:
                session = await self._create_session(recipient, quiz)
                report.session_ids.append(session.id)
                report.success_count += 1
            except DuplicateSessionError:
                report.failures.append(DispatchFailure(recipient.id, 'duplicate_session'))
            except DeliveryError:
                report.failures.append(DispatchFailure(recipient.id, 'delivery_failed'))
            except QuizWhizError as e:
                self.logger.error(f"Dispatch of quiz {quiz.id} to {recipient.id} failed: {e}")
                report.failures.append(DispatchFailure(recipient.id, type(e).__name__))
            except Exception:
                self.logger.exception(f"Unexpected error dispatching quiz {quiz.id} to {recipient.id}")
                report.failures.append(DispatchFailure(recipient.id, 'internal_error'))

        report.failure_count = len(report.failures)
        self.logger.info(
            f"Quiz {quiz.id} dispatched: {report.success_count} successful, "
            f"{report.failure_count} failed, {report.skipped_count} without channel",
            extra={
                'event_type': 'quiz_dispatched',
                'quiz_id': quiz.id,
                'success_count': report.success_count,
                'failure_count': report.failure_count,
                'skipped_count': report.skipped_count
            }
        )
        return report

    async def _log_distribution(self, report: DispatchReport, cohort_id: Optional[str],
                                teacher_id: Optional[str], distribution_type: str) -> None:
        try:
            await self._run(
                self.data_manager.log_distribution, report.quiz_id, cohort_id, teacher_id,
                distribution_type, report.total_recipients, report.success_count
            )
        except QuizWhizError as e:
            # The sessions are already live; a missing log row must not fail the dispatch
            self.logger.error(f"Failed to log distribution of quiz {report.quiz_id}: {e}")

    # Queries

    async def get_session(self, session_id: str) -> Session:
        session = self._session_cache.get(session_id)
        if session is not None:
            return session
        session = await self._run(self.data_manager.get_session, session_id)
        if session is None:
            raise SessionNotFound(f"Session {session_id} not found")
        self._remember(session)
        return session

    async def get_active_session_for_recipient(self, recipient_id: str) -> Optional[Session]:
        """
        Return the recipient's oldest live session, or None.

        Sessions past the per-session timeout are expired on the way.
        """
        sessions = await self._run(self.data_manager.list_active_sessions_for_recipient, recipient_id)
        cutoff = datetime.now() - self.session_timeout
        for session in sessions:
            if session.start_time < cutoff:
                await self._run(self.data_manager.set_session_status, session.id, SessionStatus.EXPIRED)
                self._evict(session.id)
                continue
            self._remember(session)
            return session
        return None

    async def get_current_question(self, session: Session) -> Optional[Question]:
        quiz = await self.get_quiz(session.quiz_id)
        return quiz.question_at(session.position)

    async def get_session_progress(self, session_id: str) -> Dict[str, Any]:
        session = await self.get_session(session_id)
        quiz = await self.get_quiz(session.quiz_id)
        return {
            'session_id': session.id,
            'quiz_title': quiz.title,
            'status': session.status.value,
            'current_question': min(session.position, session.total_questions),
            'answered': len(session.answers),
            'total_questions': session.total_questions,
            'awaiting_finalization': session.awaiting_finalization
        }

    async def get_recipient_performance(self, recipient_id: str, subject: Optional[str] = None) -> Dict[str, Any]:
        """Aggregate the score history of a recipient's completed sessions."""
        attempts = await self._run(self.data_manager.get_completed_attempts, recipient_id, subject)
        scores = [attempt['score'] for attempt in attempts if attempt['score'] is not None]
        return {
            'recipientId': recipient_id,
            'totalQuizzesTaken': len(scores),
            'averageScore': round(sum(scores) / len(scores), 2) if scores else None,
            'bestScore': max(scores) if scores else None,
            'worstScore': min(scores) if scores else None,
            'lastQuizDate': attempts[-1]['end_time'] if attempts else None,
            'history': attempts
        }

    async def get_cohort_overview(self, cohort_id: str, subject: Optional[str] = None) -> Dict[str, Any]:
        rows = await self._run(self.data_manager.get_cohort_scores, cohort_id, subject)
        scores = [row['score'] for row in rows if row['score'] is not None]
        per_recipient: Dict[str, List[int]] = {}
        for row in rows:
            if row['score'] is not None:
                per_recipient.setdefault(row['recipient_id'], []).append(row['score'])
        return {
            'classId': cohort_id,
            'totalStudents': len(per_recipient),
            'totalQuizzesTaken': len(scores),
            'classAverage': round(sum(scores) / len(scores), 2) if scores else None,
            'highestScore': max(scores) if scores else None,
            'lowestScore': min(scores) if scores else None
        }
