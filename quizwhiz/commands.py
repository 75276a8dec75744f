"""
Inbound chat command parsing for Quiz Whiz.

Every inbound text or button payload is parsed once into one of the command
types below; the bot then dispatches on the command type.
"""
import re
from dataclasses import dataclass
from typing import Iterable, Optional, Union

from .models import DEFAULT_CHOICE_LABELS

CALLBACK_PREFIX = "answer_"

_COMMAND_PATTERN = re.compile(r"^/(\w+)(?:@\w+)?(?:\s+(.*))?$", re.DOTALL)
_PHONE_PATTERN = re.compile(r"^\+?[\d\s\-()]{7,20}$")


@dataclass
class StartCommand:
    pass


@dataclass
class RegisterCommand:
    """``/register <phone>``; phone is None when the argument is missing or malformed."""
    phone: Optional[str] = None


@dataclass
class HelpCommand:
    pass


@dataclass
class AnswerCommand:
    """
    An answer label from a text reply or a button tap.

    Button taps also carry the session id and position they were rendered for.
    """
    label: str
    session_id: Optional[str] = None
    position: Optional[int] = None


@dataclass
class NavigateCommand:
    """``/quiz`` re-sends the current question, ``/status`` shows progress."""
    action: str

    RESUME = "resume"
    STATUS = "status"


@dataclass
class UnknownCommand:
    text: str = ""


Command = Union[StartCommand, RegisterCommand, HelpCommand, AnswerCommand, NavigateCommand, UnknownCommand]


def _is_phone(value: str) -> bool:
    return bool(_PHONE_PATTERN.match(value)) and sum(ch.isdigit() for ch in value) >= 7


def parse_text(text: Optional[str], labels: Iterable[str] = DEFAULT_CHOICE_LABELS) -> Command:
    """
    Parse an inbound text message.

    Args:
        text: Raw message text
        labels: Configured answer labels

    Returns:
        The parsed command; anything unrecognized becomes UnknownCommand
    """
    stripped = (text or "").strip()
    match = _COMMAND_PATTERN.match(stripped)
    if match:
        name = match.group(1).lower()
        argument = (match.group(2) or "").strip()
        if name == "start":
            return StartCommand()
        if name == "help":
            return HelpCommand()
        if name == "register":
            return RegisterCommand(phone=argument if argument and _is_phone(argument) else None)
        if name == "quiz":
            return NavigateCommand(NavigateCommand.RESUME)
        if name == "status":
            return NavigateCommand(NavigateCommand.STATUS)
        return UnknownCommand(stripped)

    upper_labels = {label.upper() for label in labels}
    if len(stripped) == 1 and stripped.upper() in upper_labels:
        return AnswerCommand(label=stripped.upper())
    return UnknownCommand(stripped)


def build_callback_data(session_id: str, position: int, label: str) -> str:
    return f"{CALLBACK_PREFIX}{session_id}_{position}_{label}"


def parse_callback(data: Optional[str], labels: Iterable[str] = DEFAULT_CHOICE_LABELS) -> Command:
    """
    Parse a button payload of the form ``answer_<sessionId>_<position>_<label>``.

    Session ids never contain underscores, so the payload splits from the right.
    """
    if not data or not data.startswith(CALLBACK_PREFIX):
        return UnknownCommand(data or "")

    parts = data[len(CALLBACK_PREFIX):].rsplit("_", 2)
    if len(parts) != 3:
        return UnknownCommand(data)
    session_id, position, label = parts
    if not session_id or not position.isdigit():
        return UnknownCommand(data)
    if label.upper() not in {choice.upper() for choice in labels}:
        return UnknownCommand(data)
    return AnswerCommand(label=label.upper(), session_id=session_id, position=int(position))
