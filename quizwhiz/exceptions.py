"""
Error taxonomy for Quiz Whiz.

Every error carries a ``user_message`` that is safe to show in chat: it never
contains identifiers or internal details.
"""


class QuizWhizError(Exception):
    """Base exception for Quiz Whiz errors."""
    user_message = "❌ Something went wrong. Please try again later."

    def __init__(self, message: str = None, user_message: str = None):
        super().__init__(message or self.__class__.__name__)
        if user_message is not None:
            self.user_message = user_message


class RecipientNotFound(QuizWhizError):
    """Raised when no recipient matches a phone number, channel or id."""
    user_message = (
        "❌ This phone number was not found in our system.\n\n"
        "Please contact your school administrator to add your number first."
    )


class DuplicateRecipientError(QuizWhizError):
    """Raised when adding a recipient whose phone number is already registered."""
    user_message = "❌ A person with this phone number is already registered."


class ChannelAlreadyBound(QuizWhizError):
    """Raised when a recipient is already bound to a different channel identity."""
    user_message = (
        "❌ This phone number is already registered with a different Telegram account.\n\n"
        "Please contact your school administrator if you need help."
    )


class DuplicateSessionError(QuizWhizError):
    """Raised when an active session already exists for a (recipient, quiz) pair."""
    user_message = "ℹ️ You already have this quiz in progress. Use /quiz to continue."

    def __init__(self, message: str = None, existing_session=None):
        super().__init__(message)
        self.existing_session = existing_session


class SessionNotFound(QuizWhizError):
    """Raised when operating on a session that does not exist."""
    user_message = "❌ We couldn't find that quiz attempt."


class SessionExpired(QuizWhizError):
    """Raised when an answer arrives for an expired or abandoned session."""
    user_message = "⌛ This quiz session has expired. Wait for your teacher to send a new quiz."


class SessionAlreadyFinalizing(QuizWhizError):
    """Raised when answering a session that has no unanswered questions left."""
    user_message = "🏁 All questions of this quiz are already answered."


class SessionNotFinished(QuizWhizError):
    """Raised when finalizing a session with unanswered questions without an early finish."""
    user_message = "📝 There are still unanswered questions in this quiz."


class AnswerAlreadyRecorded(QuizWhizError):
    """Raised when a duplicate answer targets a position that was already answered."""
    user_message = "✅ Your answer to this question was already recorded."


class InvalidAnswerFormat(QuizWhizError):
    """Raised when a submitted label is not part of the configured alphabet."""
    user_message = "❓ Please answer with one of the listed letters."


class QuizNotFound(QuizWhizError):
    """Raised when a quiz id does not exist."""
    user_message = "❌ That quiz could not be found."


class QuizClosedError(QuizWhizError):
    """Raised when dispatching a quiz that is already closed."""
    user_message = "❌ That quiz is closed and can no longer be sent."


class InvalidQuizContent(QuizWhizError):
    """Raised when quiz questions do not have the required shape."""
    user_message = "❌ The quiz content is incomplete or malformed."

    def __init__(self, message: str = None, issues=None):
        super().__init__(message)
        self.issues = list(issues or [])


class DeliveryError(QuizWhizError):
    """Raised when an outbound message could not be delivered to a recipient."""
    user_message = "❌ We couldn't deliver the quiz. Please try again."


class GenerationError(QuizWhizError):
    """Raised when the generative text API fails or returns unusable output."""
    user_message = "❌ Quiz generation failed. Please try again later."


class PersistenceError(QuizWhizError):
    """Wraps any failure of the underlying storage."""
    user_message = "❌ Sorry, we're having trouble saving your progress. Please try again in a moment."


class ChunkNotFound(QuizWhizError):
    """Raised when generating a quiz from a content chunk that does not exist."""
    user_message = "❌ That piece of content could not be found."
