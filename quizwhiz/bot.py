"""
Telegram bot for Quiz Whiz.
Translates chat messages and button taps into quiz controller calls and
renders the results back to the chat.
"""
import asyncio
import logging
from typing import Any, Dict, Optional, Union

from telegram import InlineKeyboardButton, InlineKeyboardMarkup, Update
from telegram.ext import (
    Application,
    CallbackQueryHandler,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    filters,
)

from .commands import (
    AnswerCommand,
    Command,
    HelpCommand,
    NavigateCommand,
    RegisterCommand,
    StartCommand,
    UnknownCommand,
    build_callback_data,
    parse_callback,
    parse_text,
)
from .config_manager import ConfigManager
from .exceptions import (
    InvalidAnswerFormat,
    QuizWhizError,
    SessionAlreadyFinalizing,
    SessionNotFound,
)
from .models import FinalizeResult, Question, Quiz, Recipient, Role, Session
from .quiz_controller import QuizController
from .quiz_engine import QuizEngine
from .recipient_manager import RecipientManager

GENERIC_ERROR_MESSAGE = "Sorry, something went wrong. Please try again later."


class QuizWhizBot:
    """Telegram front end for quiz delivery and answer collection."""

    def __init__(
        self,
        token: Optional[str],
        quiz_controller: QuizController,
        recipient_manager: RecipientManager,
        config_manager: ConfigManager
    ):
        """
        Initialize the bot and register it as the controller's question presenter.

        Args:
            token: Telegram bot API token
            quiz_controller: Session state machine
            recipient_manager: Registration and channel binding
            config_manager: Source of the answer labels
        """
        self.logger = logging.getLogger(__name__)
        self.token = token
        self.quiz_controller = quiz_controller
        self.recipient_manager = recipient_manager
        self.labels = config_manager.get_choice_labels()
        self.application: Optional[Application] = None
        self._running = False

        self.quiz_controller.set_presenter(self.present_new_quiz)

    # Lifecycle

    def build_application(self) -> Application:
        """Create the python-telegram-bot application and register handlers."""
        application = Application.builder().token(self.token).build()
        for name in ("start", "register", "help", "quiz", "status"):
            application.add_handler(CommandHandler(name, self.on_text))
        application.add_handler(CallbackQueryHandler(self.on_callback, pattern=r"^answer_"))
        application.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, self.on_text))
        application.add_error_handler(self.on_error)
        return application

    async def start(self) -> None:
        """Start long polling. Does nothing if the bot is already running."""
        if self._running:
            self.logger.info("Bot already running")
            return
        if not self.token:
            raise ValueError("Telegram bot token is not configured")

        self.application = self.build_application()
        await self.application.initialize()
        await self.application.start()
        await self.application.updater.start_polling(drop_pending_updates=True)
        self._running = True
        self.logger.info("Telegram bot started", extra={'event_type': 'bot_started'})

    async def stop(self) -> None:
        if self.application is None:
            return
        try:
            if self.application.updater and self.application.updater.running:
                await self.application.updater.stop()
            if self.application.running:
                await self.application.stop()
            await self.application.shutdown()
        finally:
            self.application = None
            self._running = False
            self.logger.info("Telegram bot stopped", extra={'event_type': 'bot_stopped'})

    def status(self) -> Dict[str, bool]:
        return {'running': self._running, 'initialized': self.application is not None}

    # Telegram callbacks

    async def on_text(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        message = update.effective_message
        if message is None or update.effective_chat is None:
            return
        command = parse_text(message.text, self.labels)
        user = update.effective_user
        await self.handle_command(
            command,
            str(update.effective_chat.id),
            update.effective_chat.id,
            user.first_name if user else None
        )

    async def on_callback(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        query = update.callback_query
        await query.answer()
        command = parse_callback(query.data, self.labels)
        chat = update.effective_chat
        user = update.effective_user
        await self.handle_command(
            command,
            str(chat.id),
            chat.id,
            user.first_name if user else None
        )

    async def on_error(self, update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
        self.logger.error(f"Unhandled Telegram error: {context.error}", exc_info=context.error)

    # Command routing

    async def handle_command(
        self,
        command: Command,
        channel_id: str,
        chat_id: Union[int, str],
        first_name: Optional[str] = None
    ) -> None:
        """
        Route a parsed command. Errors never leave this method: they are logged
        and rendered as a chat notice.
        """
        try:
            if isinstance(command, StartCommand):
                await self._handle_start(channel_id, chat_id, first_name)
            elif isinstance(command, RegisterCommand):
                await self._handle_register(command, channel_id, chat_id)
            elif isinstance(command, HelpCommand):
                await self._handle_help(channel_id, chat_id)
            elif isinstance(command, AnswerCommand):
                await self._handle_answer(command, channel_id, chat_id)
            elif isinstance(command, NavigateCommand):
                await self._handle_navigate(command, channel_id, chat_id)
            else:
                await self._handle_unknown(command, channel_id, chat_id)
        except QuizWhizError as e:
            self.logger.warning(f"{type(e).__name__} while handling {type(command).__name__}: {e}")
            await self._safe_send(chat_id, e.user_message)
        except Exception as e:
            self.logger.exception(f"Error handling {type(command).__name__}: {e}")
            await self._safe_send(chat_id, GENERIC_ERROR_MESSAGE)

    async def _lookup_recipient(self, channel_id: str) -> Optional[Recipient]:
        return await asyncio.to_thread(self.recipient_manager.get_by_channel, channel_id)

    async def _handle_start(self, channel_id: str, chat_id, first_name: Optional[str]) -> None:
        recipient = await self._lookup_recipient(channel_id)
        if recipient is not None:
            await self.send_message(
                chat_id,
                f"Welcome back, {recipient.name}! 🎓\n\n"
                f"You're registered as a {recipient.role.value}.\n"
                f"Use /help to see available commands."
            )
            return

        greeting = f"Hi {first_name}! " if first_name else ""
        await self.send_message(
            chat_id,
            f"{greeting}Welcome to Quiz Whiz! 🎓📚\n\n"
            "To get started, you need to register with your phone number.\n"
            "Use this command: /register YOUR_PHONE_NUMBER\n\n"
            "Example: /register +1234567890\n\n"
            "Your phone number should match the one registered in your school system."
        )

    async def _handle_register(self, command: RegisterCommand, channel_id: str, chat_id) -> None:
        if command.phone is None:
            await self.send_message(
                chat_id,
                "📱 Please include your phone number.\n\nExample: /register +1234567890"
            )
            return

        recipient = await asyncio.to_thread(self.recipient_manager.bind_channel, command.phone, channel_id)
        await self.send_message(chat_id, self._welcome_message(recipient))

    def _welcome_message(self, recipient: Recipient) -> str:
        message = (
            "✅ Registration successful!\n\n"
            f"Welcome {recipient.name}! 🎓\n"
            f"Role: {recipient.role.value.capitalize()}\n\n"
        )
        if recipient.role is Role.TAKER:
            message += (
                "You'll receive quizzes from your teachers here. "
                f"Answer with {self._labels_text()} when you get questions!"
            )
        elif recipient.role is Role.AUTHOR:
            message += "You can now send quizzes to your students through the web dashboard."
        else:
            message += "You have administrative access to the system."
        return message

    async def _handle_help(self, channel_id: str, chat_id) -> None:
        recipient = await self._lookup_recipient(channel_id)
        message = "📚 Quiz Whiz Help\n\n"
        if recipient is None:
            message += (
                "You're not registered yet!\n\n"
                "Commands:\n"
                "/start - Start the bot\n"
                "/register PHONE - Register with your phone number\n"
                "/help - Show this help message"
            )
        elif recipient.role is Role.TAKER:
            message += (
                "Student Commands:\n\n"
                "/start - Restart the bot\n"
                "/quiz - Show your current question again\n"
                "/status - Show your quiz progress\n"
                "/help - Show this help\n\n"
                "When you receive a quiz:\n"
                "• Read the question carefully\n"
                f"• Reply with {self._labels_text()} or tap a button\n"
                "• Get instant feedback!"
            )
        else:
            message += (
                f"{recipient.role.value.capitalize()} Commands:\n\n"
                "/start - Restart the bot\n"
                "/help - Show this help\n\n"
                "Use the web dashboard to:\n"
                "• Create and send quizzes\n"
                "• View student performance\n"
                "• Manage content"
            )
        await self.send_message(chat_id, message)

    async def _handle_answer(self, command: AnswerCommand, channel_id: str, chat_id) -> None:
        recipient = await self._lookup_recipient(channel_id)
        if recipient is None:
            await self.send_message(chat_id, "Please register first using /register YOUR_PHONE_NUMBER")
            return

        session = await self._resolve_session(recipient, command.session_id)
        if session is None:
            await self.send_message(
                chat_id,
                "❓ You don't have any active quiz right now.\n\n"
                "Your teacher will send you quizzes when they're ready!"
            )
            return

        expected_position = command.position if command.position is not None else session.position
        try:
            result = await self.quiz_controller.submit_answer(session.id, command.label, expected_position)
        except InvalidAnswerFormat as e:
            await self.send_message(chat_id, e.user_message)
            await self._present_current(chat_id, session)
            return
        except SessionAlreadyFinalizing:
            final = await self.quiz_controller.finalize(session.id)
            await self.send_message(chat_id, self.render_completion(final))
            return

        await self.send_message(chat_id, self.render_feedback(result.is_correct, result.correct_label,
                                                              result.explanation))
        if result.session.awaiting_finalization:
            final = await self.quiz_controller.finalize(session.id)
            await self.send_message(chat_id, self.render_completion(final))
        else:
            quiz = await self.quiz_controller.get_quiz(session.quiz_id)
            await self.present_question(chat_id, quiz, result.session)

    async def _resolve_session(self, recipient: Recipient, session_id: Optional[str]) -> Optional[Session]:
        """Session a button was rendered for, or the recipient's oldest live session."""
        if session_id is None:
            return await self.quiz_controller.get_active_session_for_recipient(recipient.id)
        try:
            session = await self.quiz_controller.get_session(session_id)
        except SessionNotFound:
            return None
        if session.recipient_id != recipient.id:
            self.logger.warning(f"Recipient {recipient.id} tapped a button for a session it does not own")
            return None
        return session

    async def _handle_navigate(self, command: NavigateCommand, channel_id: str, chat_id) -> None:
        recipient = await self._lookup_recipient(channel_id)
        if recipient is None:
            await self.send_message(chat_id, "Please register first using /register YOUR_PHONE_NUMBER")
            return

        session = await self.quiz_controller.get_active_session_for_recipient(recipient.id)
        if session is None:
            await self.send_message(chat_id, "❓ You don't have any active quiz right now.")
            return

        if command.action == NavigateCommand.STATUS:
            progress = await self.quiz_controller.get_session_progress(session.id)
            await self.send_message(
                chat_id,
                f"📊 {progress['quiz_title']}\n\n"
                f"Answered: {progress['answered']}/{progress['total_questions']}\n"
                f"Current question: {progress['current_question']}"
            )
        elif session.awaiting_finalization:
            final = await self.quiz_controller.finalize(session.id)
            await self.send_message(chat_id, self.render_completion(final))
        else:
            await self._present_current(chat_id, session)

    async def _handle_unknown(self, command: UnknownCommand, channel_id: str, chat_id) -> None:
        recipient = await self._lookup_recipient(channel_id)
        if recipient is None:
            await self.send_message(
                chat_id,
                "Please register first using /register YOUR_PHONE_NUMBER\n\nUse /help for more information."
            )
            return

        session = await self.quiz_controller.get_active_session_for_recipient(recipient.id)
        if session is not None:
            await self.send_message(chat_id, f"Please answer with {self._labels_text()}.")
        else:
            await self.send_message(
                chat_id,
                f"Hi {recipient.name}! 👋\n\nUse /help to see what I can do."
            )

    # Rendering

    def _labels_text(self) -> str:
        if len(self.labels) == 1:
            return self.labels[0]
        return f"{', '.join(self.labels[:-1])} or {self.labels[-1]}"

    def render_question(self, question: Question, total_questions: int) -> str:
        lines = [f"📝 Question {question.position}/{total_questions}", "", question.prompt, ""]
        for label in self.labels:
            lines.append(f"{label}) {question.choices.get(label, '')}")
        lines.append("")
        lines.append(f"💬 Reply with {self._labels_text()} or tap a button below")
        return "\n".join(lines)

    def build_keyboard(self, session_id: str, position: int) -> InlineKeyboardMarkup:
        buttons = [
            InlineKeyboardButton(label, callback_data=build_callback_data(session_id, position, label))
            for label in self.labels
        ]
        return InlineKeyboardMarkup([buttons[i:i + 2] for i in range(0, len(buttons), 2)])

    @staticmethod
    def render_feedback(is_correct: bool, correct_label: str, explanation: str = "") -> str:
        message = "✅ Correct! Well done! 🎉" if is_correct else f"❌ Wrong. The correct answer was {correct_label}."
        if explanation:
            message += f"\n\n💡 {explanation}"
        return message

    @staticmethod
    def render_completion(result: FinalizeResult) -> str:
        return (
            "🏁 Quiz Completed!\n\n"
            f"📊 Your Score: {result.score}% ({result.correct_count}/{result.total_answered})\n\n"
            f"{QuizEngine.performance_tier(result.score)}"
        )

    def render_intro(self, quiz: Quiz) -> str:
        return (
            f"🎓 New Quiz: {quiz.title}\n\n"
            f"📚 Subject: {quiz.subject or 'General'}\n"
            f"❓ Questions: {quiz.total_questions}\n\n"
            "Good luck! 🍀\n\n"
            f"Reply with {self._labels_text()} for each question."
        )

    async def present_question(self, chat_id, quiz: Quiz, session: Session) -> None:
        question = quiz.question_at(session.position)
        if question is None:
            return
        await self.send_message(
            chat_id,
            self.render_question(question, quiz.total_questions),
            reply_markup=self.build_keyboard(session.id, session.position)
        )

    async def _present_current(self, chat_id, session: Session) -> None:
        quiz = await self.quiz_controller.get_quiz(session.quiz_id)
        await self.present_question(chat_id, quiz, session)

    async def present_new_quiz(self, recipient: Recipient, quiz: Quiz, session: Session) -> None:
        """
        Deliver a freshly dispatched quiz: the intro, then the first question.
        Send failures propagate so the controller can abandon the session.
        """
        await self.send_message(recipient.channel_id, self.render_intro(quiz))
        await self.present_question(recipient.channel_id, quiz, session)

    # Outbound

    async def send_message(self, chat_id, text: str, reply_markup: Optional[Any] = None) -> None:
        if self.application is None:
            raise RuntimeError("Telegram bot is not running")
        await self.application.bot.send_message(chat_id=chat_id, text=text, reply_markup=reply_markup)

    async def _safe_send(self, chat_id, text: str) -> None:
        try:
            await self.send_message(chat_id, text)
        except Exception as e:
            self.logger.error(f"Failed to send notice to chat: {e}")
