"""
Tests for the dashboard HTTP API.
"""
import logging
import os
import unittest
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, Mock, patch

from fastapi.testclient import TestClient

from quizwhiz.api_server import ApiServices, create_app, status_for_error
from quizwhiz.database import generate_id
from quizwhiz.exceptions import (
    AnswerAlreadyRecorded,
    ChunkNotFound,
    GenerationError,
    InvalidQuizContent,
    PersistenceError,
    SessionNotFound,
)
from quizwhiz.models import ContentChunk, QuizStatus, Session
from quizwhiz.quiz_controller import QuizController
from quizwhiz.quiz_generator import QuizGenerator
from quizwhiz.recipient_manager import RecipientManager
from tests.test_fixtures import SAMPLE_GENERATED_TEXT, TestFixtures


class TestStatusForError(unittest.TestCase):

    def test_error_status_mapping(self):
        self.assertEqual(status_for_error(SessionNotFound()), 404)
        self.assertEqual(status_for_error(ChunkNotFound()), 404)
        self.assertEqual(status_for_error(InvalidQuizContent()), 400)
        self.assertEqual(status_for_error(AnswerAlreadyRecorded()), 409)
        self.assertEqual(status_for_error(PersistenceError()), 503)
        self.assertEqual(status_for_error(GenerationError()), 500)


class ApiTestCase(unittest.TestCase):
    """API wired to real services on an in-memory database."""

    def setUp(self):
        logging.disable(logging.CRITICAL)
        self.db, self.data_manager = TestFixtures.create_data_manager()
        self.config_manager = TestFixtures.create_config_manager()
        with patch.dict(os.environ, {}, clear=True):
            self.config_manager.load_from_dict({'ai': {'api_key': 'test-key'}})

        self.presenter = AsyncMock()
        self.controller = QuizController(self.data_manager, self.config_manager, self.presenter)
        self.recipient_manager = RecipientManager(self.data_manager)
        self.http = Mock()
        self.generator = QuizGenerator(self.data_manager, self.config_manager, http_session=self.http)
        self.bot = None

        self.quiz = self.data_manager.insert_quiz(TestFixtures.create_sample_quiz("BC"))

    def tearDown(self):
        logging.disable(logging.NOTSET)
        self.db.close()

    def client(self, **kwargs):
        services = ApiServices(self.controller, self.recipient_manager, self.generator, self.bot)
        return TestClient(create_app(services), **kwargs)


class TestDistributionEndpoints(ApiTestCase):

    def setUp(self):
        super().setUp()
        self.ada = TestFixtures.add_recipient(self.data_manager, name="Ada", phone="+1", channel_id="555")
        self.bob = TestFixtures.add_recipient(self.data_manager, name="Bob", phone="+2", channel_id="556")
        self.cy = TestFixtures.add_recipient(self.data_manager, name="Cy", phone="+3")

    def test_send_to_class_reports_every_recipient(self):
        response = self.client().post(
            "/api/tools/quiz/send-to-class",
            json={"quizId": self.quiz.id, "classId": "CLS1", "teacherId": "USRT"}
        )

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertTrue(body["success"])
        self.assertEqual(body["totalRecipients"], 3)
        self.assertEqual(body["successCount"], 2)
        self.assertEqual(body["failureCount"], 0)
        self.assertEqual(body["skipped"], [self.cy.id])
        self.assertEqual(
            body["successCount"] + body["failureCount"] + body["skippedCount"],
            body["totalRecipients"]
        )
        self.assertEqual(self.presenter.await_count, 2)
        self.assertEqual(self.data_manager.get_quiz(self.quiz.id).status, QuizStatus.ACTIVE)

    def test_second_dispatch_reports_duplicates(self):
        client = self.client()
        client.post("/api/tools/quiz/send-to-class", json={"quizId": self.quiz.id, "classId": "CLS1"})

        body = client.post(
            "/api/tools/quiz/send-to-class", json={"quizId": self.quiz.id, "classId": "CLS1"}
        ).json()

        self.assertEqual(body["successCount"], 0)
        self.assertEqual({f["reason"] for f in body["failures"]}, {"duplicate_session"})
        self.assertEqual(body["failureCount"], 2)

    def test_send_to_students_handles_unknown_ids(self):
        response = self.client().post(
            "/api/tools/quiz/send-to-students",
            json={"quizId": self.quiz.id, "studentIds": [self.ada.id, "USRMISSING", self.ada.id]}
        )

        body = response.json()
        self.assertEqual(body["totalRecipients"], 2)
        self.assertEqual(body["successCount"], 1)
        self.assertEqual(body["failures"], [{"recipientId": "USRMISSING", "reason": "recipient_not_found"}])

    def test_send_to_students_requires_ids(self):
        response = self.client().post(
            "/api/tools/quiz/send-to-students", json={"quizId": self.quiz.id, "studentIds": []}
        )

        self.assertEqual(response.status_code, 422)

    def test_unknown_quiz_is_404(self):
        response = self.client().post(
            "/api/tools/quiz/send-to-class", json={"quizId": "QZMISSING", "classId": "CLS1"}
        )

        self.assertEqual(response.status_code, 404)
        self.assertFalse(response.json()["success"])

    def test_closed_quiz_cannot_be_sent(self):
        client = self.client()

        close = client.post(f"/api/tools/quiz/{self.quiz.id}/close")
        send = client.post("/api/tools/quiz/send-to-class", json={"quizId": self.quiz.id, "classId": "CLS1"})

        self.assertEqual(close.json()["status"], "closed")
        self.assertEqual(send.status_code, 409)
        self.presenter.assert_not_awaited()


class TestAuthoringEndpoints(ApiTestCase):

    def setUp(self):
        super().setUp()
        self.data_manager.upsert_document("DOC1", "/tmp/book.pdf", "completed")
        self.chunk = ContentChunk(generate_id('CHK'), "DOC1", 0, 1, "Plants use sunlight.", 3)
        self.data_manager.replace_chunks("DOC1", [self.chunk])

    def _model_returns(self, text):
        response = Mock()
        response.status_code = 200
        response.json.return_value = {"candidates": [{"content": {"parts": [{"text": text}]}}]}
        self.http.post.return_value = response

    def test_generate_quiz(self):
        self._model_returns(SAMPLE_GENERATED_TEXT)

        response = self.client().post(
            "/api/tools/quiz/generate",
            json={"chunkId": self.chunk.id, "classLevel": "7th", "subject": "Biology", "classId": "CLS1"}
        )

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["questionsCount"], 2)
        self.assertEqual(body["questions"][0]["correct_label"], "A")
        self.assertEqual(self.data_manager.get_quiz(body["quizId"]).status, QuizStatus.DRAFT)

    def test_generate_quiz_without_usable_questions(self):
        self._model_returns("QUESTION 1:\nbroken\nCORRECT: A")

        response = self.client().post(
            "/api/tools/quiz/generate",
            json={"chunkId": self.chunk.id, "classLevel": "7th", "subject": "Biology"}
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["issues"], ["No valid questions were generated"])

    def test_generate_quiz_from_unknown_chunk(self):
        response = self.client().post(
            "/api/tools/quiz/generate",
            json={"chunkId": "CHKMISSING", "classLevel": "7th", "subject": "Biology"}
        )

        self.assertEqual(response.status_code, 404)

    def test_upload_missing_pdf(self):
        response = self.client().post(
            "/api/tools/pdf/upload", json={"filePath": "/no/such/file.pdf", "textbookId": "DOC9"}
        )

        self.assertEqual(response.status_code, 400)
        self.assertIn("File not found", response.json()["error"])


class TestStudentEndpoints(ApiTestCase):

    def test_register_and_list_class(self):
        client = self.client()

        created = client.post(
            "/api/tools/student/register", json={"name": "Ada", "phone": "+1 234 567 890", "classId": "CLS1"}
        )
        duplicate = client.post(
            "/api/tools/student/register", json={"name": "Eve", "phone": "+1234567890", "classId": "CLS1"}
        )
        listing = client.get("/api/tools/student/class/CLS1").json()

        self.assertEqual(created.status_code, 200)
        self.assertEqual(created.json()["student"]["phone"], "+1234567890")
        self.assertFalse(created.json()["student"]["telegramRegistered"])
        self.assertEqual(duplicate.status_code, 409)
        self.assertEqual([s["name"] for s in listing["students"]], ["Ada"])
        self.assertEqual(listing["unregisteredCount"], 1)

    def test_bulk_register(self):
        response = self.client().post(
            "/api/tools/student/bulk-register",
            json={
                "classId": "CLS2",
                "students": [
                    {"name": "Ada", "phone": "+100"},
                    {"name": "Bob", "phone": "+100"},
                    {"name": "Cy", "phone": "+300", "classId": "CLS3"},
                ]
            }
        )

        body = response.json()
        self.assertEqual(body["registeredCount"], 2)
        self.assertEqual([s["classId"] for s in body["students"]], ["CLS2", "CLS3"])
        self.assertEqual(body["errors"][0]["index"], 1)

    def test_invalid_role_is_rejected(self):
        response = self.client().post(
            "/api/tools/student/register", json={"name": "Ada", "phone": "+1", "role": "wizard"}
        )

        self.assertEqual(response.status_code, 422)


class TestAnalyticsAndMaintenance(ApiTestCase):

    def _completed_session(self, recipient, score):
        session = Session(
            id=generate_id('SES'),
            recipient_id=recipient.id,
            quiz_id=self.quiz.id,
            total_questions=2,
            start_time=datetime.now()
        )
        self.data_manager.insert_session(session)
        self.data_manager.complete_session(session.id, score, datetime.now())
        return session

    def test_student_performance(self):
        ada = TestFixtures.add_recipient(self.data_manager, phone="+1")
        self._completed_session(ada, 50)

        body = self.client().get(f"/api/tools/analytics/student/{ada.id}").json()

        self.assertEqual(body["performance"]["totalQuizzesTaken"], 1)
        self.assertEqual(body["performance"]["averageScore"], 50)

    def test_student_lookup_runs_off_the_event_loop(self):
        ada = TestFixtures.add_recipient(self.data_manager, phone="+1")

        with patch('quizwhiz.api_server.asyncio.to_thread',
                   new=AsyncMock(side_effect=lambda func, *args: func(*args))) as to_thread:
            response = self.client().get(f"/api/tools/analytics/student/{ada.id}")

        self.assertEqual(response.status_code, 200)
        to_thread.assert_any_await(self.recipient_manager.get_recipient, ada.id)

    def test_unknown_student_is_404(self):
        response = self.client().get("/api/tools/analytics/student/USRMISSING")

        self.assertEqual(response.status_code, 404)

    def test_class_overview(self):
        ada = TestFixtures.add_recipient(self.data_manager, name="Ada", phone="+1")
        bob = TestFixtures.add_recipient(self.data_manager, name="Bob", phone="+2")
        self._completed_session(ada, 100)
        self._completed_session(bob, 50)

        overview = self.client().get("/api/tools/analytics/class/CLS1").json()["overview"]

        self.assertEqual(overview["totalStudents"], 2)
        self.assertEqual(overview["classAverage"], 75)
        self.assertEqual(overview["highestScore"], 100)
        self.assertEqual(overview["lowestScore"], 50)

    def test_expire_sessions_with_custom_timeout(self):
        ada = TestFixtures.add_recipient(self.data_manager, phone="+1")
        session = Session(
            id=generate_id('SES'),
            recipient_id=ada.id,
            quiz_id=self.quiz.id,
            total_questions=2,
            start_time=datetime.now() - timedelta(hours=3)
        )
        self.data_manager.insert_session(session)
        client = self.client()

        untouched = client.post("/api/tools/sessions/expire", json={}).json()
        swept = client.post("/api/tools/sessions/expire", json={"timeoutHours": 2}).json()

        self.assertEqual(untouched["expiredCount"], 0)
        self.assertEqual(swept["sessionIds"], [session.id])

    def test_unexpected_errors_return_500(self):
        self.controller.get_cohort_overview = AsyncMock(side_effect=RuntimeError("boom"))

        response = self.client(raise_server_exceptions=False).get("/api/tools/analytics/class/CLS1")

        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json(), {"success": False, "error": "Internal server error"})


class TestBotEndpoints(ApiTestCase):

    def test_bot_endpoints_without_bot(self):
        client = self.client()

        self.assertEqual(client.post("/api/tools/bot/start").status_code, 400)
        self.assertFalse(client.get("/api/tools/bot/status").json()["running"])
        self.assertTrue(client.get("/health").json()["success"])

    def test_bot_start_and_stop(self):
        self.bot = Mock()
        self.bot.start = AsyncMock()
        self.bot.stop = AsyncMock()
        self.bot.status.return_value = {"running": True, "initialized": True}
        client = self.client()

        started = client.post("/api/tools/bot/start")
        stopped = client.post("/api/tools/bot/stop")

        self.assertEqual(started.json(), {"success": True, "running": True, "initialized": True})
        self.assertEqual(stopped.json(), {"success": True, "running": False})
        self.bot.start.assert_awaited_once()
        self.bot.stop.assert_awaited_once()


if __name__ == '__main__':
    unittest.main()
