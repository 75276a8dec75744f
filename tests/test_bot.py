"""
Tests for the Telegram front end: routing, rendering and error notices.

The controller and repository are real (in-memory database); only the
outbound Telegram call is mocked.
"""
import logging
import unittest
from unittest.mock import AsyncMock

from telegram import InlineKeyboardMarkup

from quizwhiz.bot import GENERIC_ERROR_MESSAGE, QuizWhizBot
from quizwhiz.commands import AnswerCommand, NavigateCommand, RegisterCommand, StartCommand, parse_text
from quizwhiz.exceptions import DeliveryError
from quizwhiz.models import FinalizeResult, Session, SessionStatus
from quizwhiz.quiz_controller import QuizController
from quizwhiz.recipient_manager import RecipientManager
from tests.test_fixtures import MockTelegramObjects, TestFixtures


class BotTestCase(unittest.IsolatedAsyncioTestCase):
    """One recipient bound to chat 555 and a two-question quiz (B, C)."""

    async def asyncSetUp(self):
        logging.disable(logging.CRITICAL)
        self.db, self.data_manager = TestFixtures.create_data_manager()
        self.config_manager = TestFixtures.create_config_manager()
        self.controller = QuizController(self.data_manager, self.config_manager)
        self.recipient_manager = RecipientManager(self.data_manager)
        self.bot = QuizWhizBot("TEST_TOKEN", self.controller, self.recipient_manager, self.config_manager)
        self.bot.send_message = AsyncMock()

        self.recipient = TestFixtures.add_recipient(self.data_manager, channel_id="555")
        self.quiz = self.data_manager.insert_quiz(TestFixtures.create_sample_quiz("BC"))

    async def asyncTearDown(self):
        logging.disable(logging.NOTSET)
        self.db.close()

    def sent_texts(self):
        return [call.args[1] for call in self.bot.send_message.await_args_list]

    async def say(self, text, chat_id=555):
        await self.bot.handle_command(parse_text(text, self.bot.labels), str(chat_id), chat_id, "Ada")


class TestQuizFlow(BotTestCase):

    async def test_bot_registers_itself_as_presenter(self):
        self.assertIsNotNone(self.controller.presenter)

    async def test_new_quiz_sends_intro_then_first_question_with_buttons(self):
        session = await self.controller.create_session(self.recipient.id, self.quiz.id)

        texts = self.sent_texts()
        self.assertEqual(len(texts), 2)
        self.assertIn("New Quiz: Photosynthesis basics", texts[0])
        self.assertIn("📝 Question 1/2", texts[1])
        self.assertIn("A) Alpha", texts[1])
        self.assertIn("D) Delta", texts[1])

        markup = self.bot.send_message.await_args_list[1].kwargs['reply_markup']
        self.assertIsInstance(markup, InlineKeyboardMarkup)
        rows = markup.inline_keyboard
        self.assertEqual([len(row) for row in rows], [2, 2])
        self.assertEqual(rows[0][0].callback_data, f"answer_{session.id}_1_A")
        self.assertEqual(rows[1][1].callback_data, f"answer_{session.id}_1_D")

    async def test_answers_get_feedback_before_next_question_and_completion(self):
        await self.controller.create_session(self.recipient.id, self.quiz.id)
        self.bot.send_message.reset_mock()

        await self.say("b")
        await self.say("D")

        texts = self.sent_texts()
        self.assertTrue(texts[0].startswith("✅ Correct!"))
        self.assertIn("💡 Explanation 1", texts[0])
        self.assertIn("📝 Question 2/2", texts[1])
        self.assertEqual(texts[2].splitlines()[0], "❌ Wrong. The correct answer was C.")
        self.assertIn("🏁 Quiz Completed!", texts[3])
        self.assertIn("50% (1/2)", texts[3])
        self.assertEqual(len(texts), 4)

    async def test_stale_button_tap_is_reported_as_duplicate(self):
        session = await self.controller.create_session(self.recipient.id, self.quiz.id)
        await self.say("B")
        self.bot.send_message.reset_mock()

        await self.bot.handle_command(
            AnswerCommand(label="A", session_id=session.id, position=1), "555", 555
        )

        self.assertEqual(self.sent_texts(), ["✅ Your answer to this question was already recorded."])
        stored = self.data_manager.get_session(session.id)
        self.assertEqual(stored.answers, {1: "B"})

    async def test_tap_after_completion_resends_stored_result(self):
        session = await self.controller.create_session(self.recipient.id, self.quiz.id)
        await self.say("B")
        await self.say("C")
        self.bot.send_message.reset_mock()

        await self.bot.handle_command(
            AnswerCommand(label="A", session_id=session.id, position=2), "555", 555
        )

        texts = self.sent_texts()
        self.assertEqual(len(texts), 1)
        self.assertIn("100% (2/2)", texts[0])

    async def test_invalid_label_re_presents_current_question(self):
        session = await self.controller.create_session(self.recipient.id, self.quiz.id)
        self.bot.send_message.reset_mock()

        await self.bot.handle_command(AnswerCommand(label="Z"), "555", 555)

        texts = self.sent_texts()
        self.assertEqual(texts[0], "❓ Please answer with one of the listed letters.")
        self.assertIn("📝 Question 1/2", texts[1])
        self.assertEqual(self.data_manager.get_session(session.id).position, 1)

    async def test_other_recipients_button_is_ignored(self):
        session = await self.controller.create_session(self.recipient.id, self.quiz.id)
        TestFixtures.add_recipient(self.data_manager, name="Eve", phone="+999", channel_id="777")
        self.bot.send_message.reset_mock()

        await self.bot.handle_command(
            AnswerCommand(label="B", session_id=session.id, position=1), "777", 777
        )

        self.assertIn("don't have any active quiz", self.sent_texts()[0])
        self.assertEqual(self.data_manager.get_session(session.id).answers, {})

    async def test_answer_without_session(self):
        await self.say("A")

        self.assertIn("don't have any active quiz", self.sent_texts()[0])

    async def test_unregistered_chat_is_asked_to_register(self):
        await self.say("A", chat_id=999)

        self.assertEqual(self.sent_texts(), ["Please register first using /register YOUR_PHONE_NUMBER"])

    async def test_free_text_during_quiz_asks_for_label(self):
        await self.controller.create_session(self.recipient.id, self.quiz.id)
        self.bot.send_message.reset_mock()

        await self.say("I think it is the second one")

        self.assertEqual(self.sent_texts(), ["Please answer with A, B, C or D."])

    async def test_status_and_resume(self):
        await self.controller.create_session(self.recipient.id, self.quiz.id)
        await self.say("B")
        self.bot.send_message.reset_mock()

        await self.bot.handle_command(NavigateCommand(NavigateCommand.STATUS), "555", 555)
        await self.bot.handle_command(NavigateCommand(NavigateCommand.RESUME), "555", 555)

        texts = self.sent_texts()
        self.assertIn("Answered: 1/2", texts[0])
        self.assertIn("📝 Question 2/2", texts[1])

    async def test_delivery_failure_abandons_session(self):
        self.bot.send_message.side_effect = RuntimeError("chat not found")

        with self.assertRaises(DeliveryError):
            await self.controller.create_session(self.recipient.id, self.quiz.id)

        rows = self.db.query("SELECT status FROM sessions WHERE quiz_id = ?", (self.quiz.id,))
        self.assertEqual([row['status'] for row in rows], [SessionStatus.ABANDONED.value])
        self.assertIsNone(await self.controller.get_active_session_for_recipient(self.recipient.id))


class TestRegistrationAndErrors(BotTestCase):

    async def test_start_for_new_and_known_chats(self):
        await self.bot.handle_command(StartCommand(), "999", 999, "Grace")
        await self.bot.handle_command(StartCommand(), "555", 555, "Ada")

        texts = self.sent_texts()
        self.assertTrue(texts[0].startswith("Hi Grace! Welcome to Quiz Whiz!"))
        self.assertTrue(texts[1].startswith("Welcome back, Ada!"))

    async def test_register_binds_channel(self):
        TestFixtures.add_recipient(self.data_manager, name="Bob", phone="+15550002")

        await self.bot.handle_command(RegisterCommand(phone="+1 555 0002"), "777", 777)

        self.assertIn("✅ Registration successful!", self.sent_texts()[0])
        self.assertEqual(self.data_manager.get_recipient_by_channel("777").name, "Bob")

    async def test_register_with_second_account_is_rejected(self):
        await self.bot.handle_command(RegisterCommand(phone="+1234567890"), "777", 777)

        self.assertIn("already registered with a different Telegram account", self.sent_texts()[0])
        self.assertIsNone(self.data_manager.get_recipient_by_channel("777"))

    async def test_register_without_phone_shows_usage(self):
        await self.say("/register")

        self.assertIn("Example: /register +1234567890", self.sent_texts()[0])

    async def test_unknown_phone_gets_friendly_message(self):
        await self.bot.handle_command(RegisterCommand(phone="+19999999"), "777", 777)

        self.assertIn("not found in our system", self.sent_texts()[0])

    async def test_unexpected_errors_do_not_leak_details(self):
        self.controller.get_active_session_for_recipient = AsyncMock(
            side_effect=RuntimeError("sqlite file /secret/path is locked")
        )

        await self.say("A")

        self.assertEqual(self.sent_texts(), [GENERIC_ERROR_MESSAGE])

    async def test_failed_notice_send_is_swallowed(self):
        self.bot.send_message.side_effect = RuntimeError("network down")

        await self.say("A", chat_id=999)

        self.bot.send_message.assert_awaited()


class TestTelegramCallbacks(BotTestCase):

    async def test_on_text_routes_message(self):
        update = MockTelegramObjects.create_mock_update("/help")

        await self.bot.on_text(update, None)

        self.assertIn("Student Commands", self.sent_texts()[0])

    async def test_on_callback_acknowledges_and_answers(self):
        session = await self.controller.create_session(self.recipient.id, self.quiz.id)
        self.bot.send_message.reset_mock()
        update = MockTelegramObjects.create_mock_callback_update(f"answer_{session.id}_1_B")

        await self.bot.on_callback(update, None)

        update.callback_query.answer.assert_awaited_once()
        self.assertTrue(self.sent_texts()[0].startswith("✅ Correct!"))


class TestRendering(unittest.TestCase):

    def setUp(self):
        db, data_manager = TestFixtures.create_data_manager()
        self.addCleanup(db.close)
        config_manager = TestFixtures.create_config_manager()
        controller = QuizController(data_manager, config_manager)
        self.bot = QuizWhizBot(None, controller, RecipientManager(data_manager), config_manager)

    def test_render_feedback(self):
        self.assertEqual(QuizWhizBot.render_feedback(True, "B"), "✅ Correct! Well done! 🎉")
        self.assertEqual(
            QuizWhizBot.render_feedback(False, "C", "Because."),
            "❌ Wrong. The correct answer was C.\n\n💡 Because."
        )

    def test_render_completion_includes_tier(self):
        session = Session(id="SES1", recipient_id="USR1", quiz_id="QZ1", total_questions=2)
        text = QuizWhizBot.render_completion(
            FinalizeResult(session=session, score=100, correct_count=2, total_answered=2)
        )

        self.assertIn("📊 Your Score: 100% (2/2)", text)
        self.assertIn("Excellent work", text)

    def test_status_before_start(self):
        self.assertEqual(self.bot.status(), {'running': False, 'initialized': False})


class TestBotLifecycle(unittest.IsolatedAsyncioTestCase):

    async def test_start_without_token_raises(self):
        db, data_manager = TestFixtures.create_data_manager()
        self.addCleanup(db.close)
        config_manager = TestFixtures.create_config_manager()
        controller = QuizController(data_manager, config_manager)
        bot = QuizWhizBot(None, controller, RecipientManager(data_manager), config_manager)

        with self.assertRaises(ValueError):
            await bot.start()
        with self.assertRaises(RuntimeError):
            await bot.send_message(555, "hello")


if __name__ == '__main__':
    unittest.main()
