"""
Core data models for Quiz Whiz.
"""
from dataclasses import dataclass, field
from typing import Dict, List, Optional
from datetime import datetime
from enum import Enum


DEFAULT_CHOICE_LABELS = ("A", "B", "C", "D")


class Role(Enum):
    """Role of a registered person."""
    TAKER = "taker"
    AUTHOR = "author"
    OPERATOR = "operator"


class QuizStatus(Enum):
    """Lifecycle status of a quiz."""
    DRAFT = "draft"
    ACTIVE = "active"
    CLOSED = "closed"


class SessionStatus(Enum):
    """Status of a quiz-taking attempt."""
    ACTIVE = "active"
    COMPLETED = "completed"
    EXPIRED = "expired"
    ABANDONED = "abandoned"


@dataclass
class Recipient:
    """A registered person who can be sent quizzes."""
    id: str
    name: str
    phone: str
    role: Role = Role.TAKER
    cohort_id: Optional[str] = None
    channel_id: Optional[str] = None
    is_active: bool = True
    created_at: Optional[datetime] = None

    @property
    def has_channel(self) -> bool:
        return bool(self.channel_id)


@dataclass
class Question:
    """Represents a single multiple-choice question."""
    position: int
    prompt: str
    choices: Dict[str, str]
    correct_label: str
    explanation: str = ""
    difficulty: str = "easy"
    id: Optional[str] = None


@dataclass
class Quiz:
    """An ordered list of questions targeted at a cohort."""
    id: str
    title: str
    questions: List[Question] = field(default_factory=list)
    subject: str = ""
    cohort_id: Optional[str] = None
    status: QuizStatus = QuizStatus.DRAFT
    created_by: Optional[str] = None
    source_chunk_id: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def total_questions(self) -> int:
        return len(self.questions)

    def question_at(self, position: int) -> Optional[Question]:
        """Return the question at a 1-based position, or None if out of range."""
        if 1 <= position <= len(self.questions):
            return self.questions[position - 1]
        return None


@dataclass
class Session:
    """One attempt by a recipient at a specific quiz."""
    id: str
    recipient_id: str
    quiz_id: str
    total_questions: int
    status: SessionStatus = SessionStatus.ACTIVE
    position: int = 1
    answers: Dict[int, str] = field(default_factory=dict)
    start_time: datetime = field(default_factory=datetime.now)
    end_time: Optional[datetime] = None
    score: Optional[int] = None

    @property
    def is_active(self) -> bool:
        return self.status is SessionStatus.ACTIVE

    @property
    def awaiting_finalization(self) -> bool:
        return self.position > self.total_questions


@dataclass
class AnswerResult:
    """Outcome of a single answer submission."""
    session: Session
    question: Question
    submitted_label: str
    is_correct: bool

    @property
    def correct_label(self) -> str:
        return self.question.correct_label

    @property
    def explanation(self) -> str:
        return self.question.explanation


@dataclass
class FinalizeResult:
    """Outcome of finalizing a session."""
    session: Session
    score: int
    correct_count: int
    total_answered: int


@dataclass
class DispatchFailure:
    recipient_id: str
    reason: str


@dataclass
class DispatchReport:
    """Aggregate result of sending a quiz to many recipients."""
    quiz_id: str
    total_recipients: int = 0
    success_count: int = 0
    failure_count: int = 0
    failures: List[DispatchFailure] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    session_ids: List[str] = field(default_factory=list)

    @property
    def skipped_count(self) -> int:
        return len(self.skipped)

    def to_dict(self) -> Dict[str, object]:
        return {
            'quizId': self.quiz_id,
            'totalRecipients': self.total_recipients,
            'successCount': self.success_count,
            'failureCount': self.failure_count,
            'skippedCount': self.skipped_count,
            'skipped': list(self.skipped),
            'failures': [
                {'recipientId': f.recipient_id, 'reason': f.reason} for f in self.failures
            ],
        }


@dataclass
class ContentChunk:
    """A bounded-size piece of extracted document text."""
    id: str
    document_id: str
    chunk_index: int
    page_number: int
    content: str
    word_count: int


@dataclass
class QuizSettings:
    """Runtime policy for quiz delivery and authoring."""
    choice_labels: tuple = DEFAULT_CHOICE_LABELS
    session_timeout_minutes: int = 60
    sweep_timeout_hours: int = 24
    sweep_interval_minutes: int = 10
    chunk_size: int = 1500
    questions_per_quiz: int = 10
    min_generated_questions: int = 1
