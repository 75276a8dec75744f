"""
Data manager for relational storage of recipients, quizzes, sessions and
ingested content.
"""
import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from .database import DatabaseConnection, generate_id
from .models import (
    ContentChunk,
    Question,
    Quiz,
    QuizStatus,
    Recipient,
    Role,
    Session,
    SessionStatus,
)


def _to_db_time(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat(timespec='microseconds') if value else None


def _from_db_time(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class DataManager:
    """Runs the parameterized SQL behind every stored entity."""

    def __init__(self, db: DatabaseConnection):
        """
        Initialize DataManager with a database connection.

        Args:
            db: Shared persistence adapter
        """
        self.db = db
        self.logger = logging.getLogger(__name__)

    # Recipients

    def _row_to_recipient(self, row: Dict[str, Any]) -> Recipient:
        return Recipient(
            id=row['id'],
            name=row['name'],
            phone=row['phone'],
            role=Role(row['role']),
            cohort_id=row['cohort_id'],
            channel_id=row['channel_id'],
            is_active=bool(row['is_active']),
            created_at=_from_db_time(row['created_at'])
        )

    def insert_recipient(self, recipient: Recipient) -> Recipient:
        if recipient.created_at is None:
            recipient.created_at = datetime.now()
        self.db.execute(
            "INSERT INTO users (id, name, phone, channel_id, role, cohort_id, is_active, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (recipient.id, recipient.name, recipient.phone, recipient.channel_id,
             recipient.role.value, recipient.cohort_id, int(recipient.is_active),
             _to_db_time(recipient.created_at))
        )
        return recipient

    def get_recipient(self, recipient_id: str) -> Optional[Recipient]:
        row = self.db.query_one("SELECT * FROM users WHERE id = ?", (recipient_id,))
        return self._row_to_recipient(row) if row else None

    def get_recipient_by_phone(self, phone: str) -> Optional[Recipient]:
        row = self.db.query_one("SELECT * FROM users WHERE phone = ?", (phone,))
        return self._row_to_recipient(row) if row else None

    def get_recipient_by_channel(self, channel_id: str) -> Optional[Recipient]:
        row = self.db.query_one("SELECT * FROM users WHERE channel_id = ?", (channel_id,))
        return self._row_to_recipient(row) if row else None

    def bind_channel(self, recipient_id: str, channel_id: str) -> bool:
        """
        Set a recipient's channel identifier once.

        Returns:
            True if the binding was written or already matched, False if the
            recipient is bound to a different channel
        """
        updated = self.db.execute(
            "UPDATE users SET channel_id = ? "
            "WHERE id = ? AND (channel_id IS NULL OR channel_id = ?)",
            (channel_id, recipient_id, channel_id)
        )
        return updated == 1

    def list_recipients_by_cohort(self, cohort_id: str, include_inactive: bool = False) -> List[Recipient]:
        sql = "SELECT * FROM users WHERE cohort_id = ? AND role = ?"
        if not include_inactive:
            sql += " AND is_active = 1"
        sql += " ORDER BY name"
        rows = self.db.query(sql, (cohort_id, Role.TAKER.value))
        return [self._row_to_recipient(row) for row in rows]

    def list_recipients_without_channel(self, cohort_id: Optional[str] = None) -> List[Recipient]:
        sql = "SELECT * FROM users WHERE channel_id IS NULL AND is_active = 1"
        params: List[Any] = []
        if cohort_id:
            sql += " AND cohort_id = ?"
            params.append(cohort_id)
        rows = self.db.query(sql + " ORDER BY name", params)
        return [self._row_to_recipient(row) for row in rows]

    # Quizzes

    def _row_to_question(self, row: Dict[str, Any]) -> Question:
        return Question(
            id=row['id'],
            position=row['position'],
            prompt=row['prompt'],
            choices=json.loads(row['choices']),
            correct_label=row['correct_label'],
            explanation=row['explanation'],
            difficulty=row['difficulty']
        )

    def insert_quiz(self, quiz: Quiz) -> Quiz:
        """Persist a quiz and its questions in one transaction."""
        if quiz.created_at is None:
            quiz.created_at = datetime.now()
        with self.db.transaction() as cursor:
            cursor.execute(
                "INSERT INTO quizzes (id, title, subject, cohort_id, status, created_by, "
                "source_chunk_id, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (quiz.id, quiz.title, quiz.subject, quiz.cohort_id, quiz.status.value,
                 quiz.created_by, quiz.source_chunk_id, _to_db_time(quiz.created_at))
            )
            self._insert_questions(cursor, quiz.id, quiz.questions)
        self.logger.info(f"Saved quiz {quiz.id} with {len(quiz.questions)} questions")
        return quiz

    def _insert_questions(self, cursor, quiz_id: str, questions: List[Question]) -> None:
        for question in questions:
            if not question.id:
                question.id = generate_id('Q')
            cursor.execute(
                "INSERT INTO questions (id, quiz_id, position, prompt, choices, correct_label, "
                "explanation, difficulty) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (question.id, quiz_id, question.position, question.prompt,
                 json.dumps(question.choices), question.correct_label,
                 question.explanation or "", question.difficulty)
            )

    def replace_questions(self, quiz_id: str, questions: List[Question]) -> bool:
        """
        Replace the questions of a draft quiz.

        Returns:
            False if the quiz is missing or no longer a draft
        """
        with self.db.transaction() as cursor:
            cursor.execute("SELECT status FROM quizzes WHERE id = ?", (quiz_id,))
            row = cursor.fetchone()
            if row is None or row['status'] != QuizStatus.DRAFT.value:
                return False
            cursor.execute("DELETE FROM questions WHERE quiz_id = ?", (quiz_id,))
            self._insert_questions(cursor, quiz_id, questions)
        return True

    def get_quiz(self, quiz_id: str) -> Optional[Quiz]:
        row = self.db.query_one("SELECT * FROM quizzes WHERE id = ?", (quiz_id,))
        if row is None:
            return None
        question_rows = self.db.query(
            "SELECT * FROM questions WHERE quiz_id = ? ORDER BY position", (quiz_id,)
        )
        return Quiz(
            id=row['id'],
            title=row['title'],
            subject=row['subject'],
            cohort_id=row['cohort_id'],
            status=QuizStatus(row['status']),
            created_by=row['created_by'],
            source_chunk_id=row['source_chunk_id'],
            created_at=_from_db_time(row['created_at']),
            questions=[self._row_to_question(q) for q in question_rows]
        )

    def update_quiz_status(self, quiz_id: str, status: QuizStatus) -> bool:
        sent_at = _to_db_time(datetime.now()) if status is QuizStatus.ACTIVE else None
        updated = self.db.execute(
            "UPDATE quizzes SET status = ?, sent_at = COALESCE(sent_at, ?) WHERE id = ?",
            (status.value, sent_at, quiz_id)
        )
        return updated == 1

    # Sessions

    def _row_to_session(self, row: Dict[str, Any]) -> Session:
        answers = {int(position): label for position, label in json.loads(row['answers']).items()}
        return Session(
            id=row['id'],
            recipient_id=row['recipient_id'],
            quiz_id=row['quiz_id'],
            total_questions=row['total_questions'],
            status=SessionStatus(row['status']),
            position=row['position'],
            answers=dict(sorted(answers.items())),
            start_time=_from_db_time(row['start_time']),
            end_time=_from_db_time(row['end_time']),
            score=row['score']
        )

    def insert_session(self, session: Session) -> Optional[Session]:
        """
        Insert a session unless the pair already has an active one.

        Returns:
            The existing active session when one blocks the insert, else None
        """
        with self.db.transaction() as cursor:
            cursor.execute(
                "SELECT * FROM sessions WHERE recipient_id = ? AND quiz_id = ? AND status = ?",
                (session.recipient_id, session.quiz_id, SessionStatus.ACTIVE.value)
            )
            existing = cursor.fetchone()
            if existing is not None:
                return self._row_to_session(dict(existing))
            cursor.execute(
                "INSERT INTO sessions (id, recipient_id, quiz_id, status, position, total_questions, "
                "answers, start_time) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (session.id, session.recipient_id, session.quiz_id, session.status.value,
                 session.position, session.total_questions, json.dumps(session.answers),
                 _to_db_time(session.start_time))
            )
        return None

    def get_session(self, session_id: str) -> Optional[Session]:
        row = self.db.query_one("SELECT * FROM sessions WHERE id = ?", (session_id,))
        return self._row_to_session(row) if row else None

    def list_active_sessions_for_recipient(self, recipient_id: str) -> List[Session]:
        rows = self.db.query(
            "SELECT * FROM sessions WHERE recipient_id = ? AND status = ? ORDER BY start_time",
            (recipient_id, SessionStatus.ACTIVE.value)
        )
        return [self._row_to_session(row) for row in rows]

    def record_answer(self, session_id: str, expected_position: int, label: str) -> bool:
        """
        Append an answer and advance the position in one conditional update.

        The write only applies while the session is active and still at
        ``expected_position``.

        Returns:
            True if the answer was recorded
        """
        with self.db.transaction() as cursor:
            cursor.execute(
                "SELECT answers FROM sessions WHERE id = ? AND status = ? AND position = ?",
                (session_id, SessionStatus.ACTIVE.value, expected_position)
            )
            row = cursor.fetchone()
            if row is None:
                return False
            answers = json.loads(row['answers'])
            if str(expected_position) in answers:
                return False
            answers[str(expected_position)] = label
            cursor.execute(
                "UPDATE sessions SET answers = ?, position = position + 1 "
                "WHERE id = ? AND status = ? AND position = ?",
                (json.dumps(answers), session_id, SessionStatus.ACTIVE.value, expected_position)
            )
            return cursor.rowcount == 1

    def complete_session(self, session_id: str, score: int, end_time: datetime) -> bool:
        updated = self.db.execute(
            "UPDATE sessions SET status = ?, score = ?, end_time = ? WHERE id = ? AND status = ?",
            (SessionStatus.COMPLETED.value, score, _to_db_time(end_time),
             session_id, SessionStatus.ACTIVE.value)
        )
        return updated == 1

    def set_session_status(self, session_id: str, status: SessionStatus) -> bool:
        """Move an active session to a terminal status without scoring it."""
        updated = self.db.execute(
            "UPDATE sessions SET status = ? WHERE id = ? AND status = ?",
            (status.value, session_id, SessionStatus.ACTIVE.value)
        )
        return updated == 1

    def expire_sessions_started_before(self, cutoff: datetime) -> List[str]:
        """Transition every active session started before ``cutoff`` to expired."""
        with self.db.transaction() as cursor:
            cursor.execute(
                "SELECT id FROM sessions WHERE status = ? AND start_time < ?",
                (SessionStatus.ACTIVE.value, _to_db_time(cutoff))
            )
            expired_ids = [row['id'] for row in cursor.fetchall()]
            if expired_ids:
                cursor.execute(
                    "UPDATE sessions SET status = ? WHERE status = ? AND start_time < ?",
                    (SessionStatus.EXPIRED.value, SessionStatus.ACTIVE.value, _to_db_time(cutoff))
                )
        return expired_ids

    # Content ingestion

    def upsert_document(self, document_id: str, file_path: str, status: str) -> None:
        self.db.execute(
            "INSERT INTO documents (id, file_path, extraction_status, updated_at) VALUES (?, ?, ?, ?) "
            "ON CONFLICT(id) DO UPDATE SET file_path = excluded.file_path, "
            "extraction_status = excluded.extraction_status, updated_at = excluded.updated_at",
            (document_id, file_path, status, _to_db_time(datetime.now()))
        )

    def update_document(self, document_id: str, status: str, extracted_text: Optional[str] = None,
                        page_count: Optional[int] = None) -> None:
        self.db.execute(
            "UPDATE documents SET extraction_status = ?, "
            "extracted_text = COALESCE(?, extracted_text), page_count = COALESCE(?, page_count), "
            "updated_at = ? WHERE id = ?",
            (status, extracted_text, page_count, _to_db_time(datetime.now()), document_id)
        )

    def replace_chunks(self, document_id: str, chunks: List[ContentChunk]) -> None:
        with self.db.transaction() as cursor:
            cursor.execute("DELETE FROM content_chunks WHERE document_id = ?", (document_id,))
            for chunk in chunks:
                cursor.execute(
                    "INSERT INTO content_chunks (id, document_id, chunk_index, page_number, content, "
                    "word_count) VALUES (?, ?, ?, ?, ?, ?)",
                    (chunk.id, chunk.document_id, chunk.chunk_index, chunk.page_number,
                     chunk.content, chunk.word_count)
                )
        self.logger.info(f"Saved {len(chunks)} content chunks for document {document_id}")

    def get_chunk(self, chunk_id: str) -> Optional[ContentChunk]:
        row = self.db.query_one("SELECT * FROM content_chunks WHERE id = ?", (chunk_id,))
        return ContentChunk(**row) if row else None

    def list_chunks(self, document_id: str) -> List[ContentChunk]:
        rows = self.db.query(
            "SELECT * FROM content_chunks WHERE document_id = ? ORDER BY chunk_index", (document_id,)
        )
        return [ContentChunk(**row) for row in rows]

    # Distribution log and analytics

    def log_distribution(self, quiz_id: str, cohort_id: Optional[str], teacher_id: Optional[str],
                         distribution_type: str, recipient_count: int, success_count: int) -> None:
        self.db.execute(
            "INSERT INTO quiz_distributions (id, quiz_id, cohort_id, teacher_id, distribution_type, "
            "recipient_count, success_count, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (generate_id('DST'), quiz_id, cohort_id, teacher_id, distribution_type,
             recipient_count, success_count, _to_db_time(datetime.now()))
        )

    def get_completed_attempts(self, recipient_id: str, subject: Optional[str] = None) -> List[Dict[str, Any]]:
        sql = ("SELECT s.id AS session_id, s.quiz_id, q.title, q.subject, s.score, "
               "s.start_time, s.end_time FROM sessions s JOIN quizzes q ON q.id = s.quiz_id "
               "WHERE s.recipient_id = ? AND s.status = ?")
        params: List[Any] = [recipient_id, SessionStatus.COMPLETED.value]
        if subject:
            sql += " AND q.subject = ?"
            params.append(subject)
        return self.db.query(sql + " ORDER BY s.end_time", params)

    def get_cohort_scores(self, cohort_id: str, subject: Optional[str] = None) -> List[Dict[str, Any]]:
        sql = ("SELECT u.id AS recipient_id, u.name, s.score, q.subject FROM sessions s "
               "JOIN users u ON u.id = s.recipient_id JOIN quizzes q ON q.id = s.quiz_id "
               "WHERE u.cohort_id = ? AND s.status = ?")
        params: List[Any] = [cohort_id, SessionStatus.COMPLETED.value]
        if subject:
            sql += " AND q.subject = ?"
            params.append(subject)
        return self.db.query(sql, params)
