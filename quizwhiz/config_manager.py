"""
Configuration manager for Quiz Whiz settings and service parameters.
"""
import logging
import os
from typing import Optional, Dict, Any, List
from pathlib import Path

from .models import QuizSettings, DEFAULT_CHOICE_LABELS


class ConfigManager:
    """Manages bot, storage and quiz policy configuration."""

    # Default configuration values
    DEFAULT_SESSION_TIMEOUT_MINUTES = 60
    DEFAULT_SWEEP_TIMEOUT_HOURS = 24
    DEFAULT_SWEEP_INTERVAL_MINUTES = 10
    DEFAULT_CHUNK_SIZE = 1500
    DEFAULT_QUESTIONS_PER_QUIZ = 10
    DEFAULT_DATABASE_PATH = "./data/quiz_whiz.db"
    DEFAULT_API_HOST = "0.0.0.0"
    DEFAULT_API_PORT = 3001
    DEFAULT_AI_MODEL = "gemini-2.0-flash"

    # Validation limits
    MIN_SESSION_TIMEOUT_MINUTES = 1
    MAX_SESSION_TIMEOUT_MINUTES = 24 * 60
    MIN_SWEEP_INTERVAL_MINUTES = 1
    MAX_SWEEP_INTERVAL_MINUTES = 24 * 60
    MIN_CHUNK_SIZE = 200
    MAX_CHUNK_SIZE = 20000
    MIN_QUESTIONS_PER_QUIZ = 1
    MAX_QUESTIONS_PER_QUIZ = 50

    # Environment variables take precedence over config.json
    ENV_OVERRIDES = {
        'TELEGRAM_BOT_TOKEN': ('bot', 'token'),
        'GEMINI_API_KEY': ('ai', 'api_key'),
        'QUIZWHIZ_DB_PATH': ('database', 'path'),
        'QUIZWHIZ_API_PORT': ('server', 'port'),
    }

    def __init__(self):
        """Initialize ConfigManager with default settings."""
        self.logger = logging.getLogger(__name__)
        self._settings = QuizSettings()
        self._bot_token: Optional[str] = None
        self._ai_api_key: Optional[str] = None
        self._ai_model = self.DEFAULT_AI_MODEL
        self._database_path = self.DEFAULT_DATABASE_PATH
        self._api_host = self.DEFAULT_API_HOST
        self._api_port = self.DEFAULT_API_PORT

    def load_from_dict(self, config: Dict[str, Any]) -> List[str]:
        """
        Apply a parsed config.json document, then environment overrides.

        Invalid values are logged and skipped so that defaults stay in place.

        Args:
            config: Parsed configuration with optional sections
                'bot', 'database', 'ai', 'quiz' and 'server'

        Returns:
            List of user-friendly messages for every rejected value
        """
        config = self._apply_env_overrides(dict(config or {}))
        rejected = []

        bot_config = config.get('bot', {})
        token = bot_config.get('token')
        if token and token != "YOUR_TELEGRAM_BOT_TOKEN_HERE":
            self._bot_token = token

        ai_config = config.get('ai', {})
        if ai_config.get('api_key'):
            self._ai_api_key = ai_config['api_key']
        if ai_config.get('model'):
            self._ai_model = ai_config['model']

        database_config = config.get('database', {})
        if database_config.get('path'):
            result = self.set_database_path(database_config['path'])
            if not result['success']:
                rejected.append(result['user_message'])

        server_config = config.get('server', {})
        self._api_host = server_config.get('host', self._api_host)
        if 'port' in server_config:
            try:
                self._api_port = int(server_config['port'])
            except (TypeError, ValueError):
                rejected.append(f"❌ Invalid API port: {server_config['port']}")

        quiz_config = config.get('quiz', {})
        setters = {
            'session_timeout_minutes': self.set_session_timeout,
            'sweep_interval_minutes': self.set_sweep_interval,
            'sweep_timeout_hours': self.set_sweep_timeout,
            'chunk_size': self.set_chunk_size,
            'questions_per_quiz': self.set_questions_per_quiz,
        }
        for key, setter in setters.items():
            if key in quiz_config:
                result = setter(quiz_config[key])
                if not result['success']:
                    rejected.append(result['user_message'])

        if 'choice_labels' in quiz_config:
            result = self.set_choice_labels(quiz_config['choice_labels'])
            if not result['success']:
                rejected.append(result['user_message'])

        if rejected:
            self.logger.warning(f"Rejected {len(rejected)} configuration values; defaults kept")
        return rejected

    def _apply_env_overrides(self, config: Dict[str, Any]) -> Dict[str, Any]:
        for env_name, (section, key) in self.ENV_OVERRIDES.items():
            value = os.getenv(env_name)
            if value:
                section_config = dict(config.get(section, {}))
                section_config[key] = value
                config[section] = section_config
                self.logger.debug(f"Using {env_name} from environment")
        return config

    def get_quiz_settings(self) -> QuizSettings:
        """
        Get current quiz settings.

        Returns:
            QuizSettings object with current configuration
        """
        return QuizSettings(
            choice_labels=tuple(self._settings.choice_labels),
            session_timeout_minutes=self._settings.session_timeout_minutes,
            sweep_timeout_hours=self._settings.sweep_timeout_hours,
            sweep_interval_minutes=self._settings.sweep_interval_minutes,
            chunk_size=self._settings.chunk_size,
            questions_per_quiz=self._settings.questions_per_quiz,
            min_generated_questions=self._settings.min_generated_questions
        )

    def _validate_int(self, name: str, value, minimum: int, maximum: int, unit: str) -> Optional[Dict[str, Any]]:
        """Return an error result dict, or None when the value is acceptable."""
        if not isinstance(value, int) or isinstance(value, bool):
            error_msg = f"{name} must be an integer, got {type(value).__name__}"
            self.logger.error(error_msg)
            return {
                'success': False,
                'error': error_msg,
                'user_message': f"❌ Invalid input: Expected a number, got {type(value).__name__}"
            }
        if value < minimum:
            error_msg = f"{name} must be at least {minimum}"
            self.logger.error(error_msg)
            return {
                'success': False,
                'error': error_msg,
                'user_message': f"❌ {name} too small: Minimum is {minimum} {unit}"
            }
        if value > maximum:
            error_msg = f"{name} cannot exceed {maximum}"
            self.logger.error(error_msg)
            return {
                'success': False,
                'error': error_msg,
                'user_message': f"❌ {name} too large: Maximum is {maximum} {unit}"
            }
        return None

    def set_session_timeout(self, minutes: int) -> Dict[str, Any]:
        """
        Set how long a single session stays answerable after it starts.

        Args:
            minutes: Session lifetime in minutes

        Returns:
            Dictionary with success status, error message, and user-friendly message
        """
        error = self._validate_int(
            "Session timeout", minutes,
            self.MIN_SESSION_TIMEOUT_MINUTES, self.MAX_SESSION_TIMEOUT_MINUTES, "minutes"
        )
        if error:
            return error

        self._settings.session_timeout_minutes = minutes
        self.logger.info(f"Session timeout set to {minutes} minutes")
        return {
            'success': True,
            'message': f"Session timeout set to {minutes} minutes",
            'user_message': f"✅ Quiz sessions expire after {minutes} minutes"
        }

    def get_session_timeout(self) -> int:
        return self._settings.session_timeout_minutes

    def set_sweep_timeout(self, hours: int) -> Dict[str, Any]:
        """
        Set the age after which the periodic sweep expires active sessions.

        Args:
            hours: Sweep cutoff age in hours

        Returns:
            Dictionary with success status, error message, and user-friendly message
        """
        error = self._validate_int("Sweep timeout", hours, 1, 24 * 30, "hours")
        if error:
            return error

        self._settings.sweep_timeout_hours = hours
        self.logger.info(f"Sweep timeout set to {hours} hours")
        return {
            'success': True,
            'message': f"Sweep timeout set to {hours} hours",
            'user_message': f"✅ Stale sessions are swept after {hours} hours"
        }

    def get_sweep_timeout(self) -> int:
        return self._settings.sweep_timeout_hours

    def set_sweep_interval(self, minutes: int) -> Dict[str, Any]:
        """
        Set how often the stale-session sweep runs.

        Args:
            minutes: Interval between sweeps in minutes

        Returns:
            Dictionary with success status, error message, and user-friendly message
        """
        error = self._validate_int(
            "Sweep interval", minutes,
            self.MIN_SWEEP_INTERVAL_MINUTES, self.MAX_SWEEP_INTERVAL_MINUTES, "minutes"
        )
        if error:
            return error

        self._settings.sweep_interval_minutes = minutes
        self.logger.info(f"Sweep interval set to {minutes} minutes")
        return {
            'success': True,
            'message': f"Sweep interval set to {minutes} minutes",
            'user_message': f"✅ Sweep runs every {minutes} minutes"
        }

    def get_sweep_interval(self) -> int:
        return self._settings.sweep_interval_minutes

    def set_chunk_size(self, size: int) -> Dict[str, Any]:
        """Set the maximum number of characters per content chunk."""
        error = self._validate_int("Chunk size", size, self.MIN_CHUNK_SIZE, self.MAX_CHUNK_SIZE, "characters")
        if error:
            return error

        self._settings.chunk_size = size
        self.logger.info(f"Chunk size set to {size}")
        return {
            'success': True,
            'message': f"Chunk size set to {size}",
            'user_message': f"✅ Documents will be split into chunks of up to {size} characters"
        }

    def set_questions_per_quiz(self, count: int) -> Dict[str, Any]:
        """Set how many questions the generator asks for."""
        error = self._validate_int(
            "Questions per quiz", count,
            self.MIN_QUESTIONS_PER_QUIZ, self.MAX_QUESTIONS_PER_QUIZ, "questions"
        )
        if error:
            return error

        self._settings.questions_per_quiz = count
        self.logger.info(f"Questions per quiz set to {count}")
        return {
            'success': True,
            'message': f"Questions per quiz set to {count}",
            'user_message': f"✅ Generated quizzes will contain {count} questions"
        }

    def set_choice_labels(self, labels) -> Dict[str, Any]:
        """
        Set the answer label alphabet.

        Labels must be distinct single letters; they are stored uppercase.
        """
        if not isinstance(labels, (list, tuple)) or len(labels) < 2:
            error_msg = f"Choice labels must be a list of at least two letters, got {labels!r}"
            self.logger.error(error_msg)
            return {
                'success': False,
                'error': error_msg,
                'user_message': "❌ Invalid labels: provide at least two single letters"
            }

        normalized = tuple(str(label).strip().upper() for label in labels)
        if any(len(label) != 1 or not label.isalpha() for label in normalized):
            error_msg = f"Choice labels must be single letters, got {labels!r}"
            self.logger.error(error_msg)
            return {
                'success': False,
                'error': error_msg,
                'user_message': "❌ Invalid labels: each label must be a single letter"
            }

        if len(set(normalized)) != len(normalized):
            error_msg = f"Choice labels must be distinct, got {labels!r}"
            self.logger.error(error_msg)
            return {
                'success': False,
                'error': error_msg,
                'user_message': "❌ Invalid labels: labels must not repeat"
            }

        self._settings.choice_labels = normalized
        self.logger.info(f"Choice labels set to {', '.join(normalized)}")
        return {
            'success': True,
            'message': f"Choice labels set to {', '.join(normalized)}",
            'user_message': f"✅ Answers use the labels {', '.join(normalized)}"
        }

    def get_choice_labels(self) -> tuple:
        return tuple(self._settings.choice_labels)

    def set_database_path(self, path: str) -> Dict[str, Any]:
        """
        Set the database file path with validation.

        Args:
            path: Path to the database file, or ':memory:'

        Returns:
            Dictionary with success status, error message, and user-friendly message
        """
        if not isinstance(path, str) or not path.strip():
            error_msg = "Database path cannot be empty"
            self.logger.error(error_msg)
            return {
                'success': False,
                'error': error_msg,
                'user_message': "❌ Database path cannot be empty"
            }

        if path != ":memory:":
            try:
                path = str(Path(path).expanduser())
            except (OSError, ValueError, RuntimeError) as e:
                error_msg = f"Invalid database path format: {e}"
                self.logger.error(error_msg)
                return {
                    'success': False,
                    'error': error_msg,
                    'user_message': f"❌ Invalid path format: {path}"
                }

        self._database_path = path
        self.logger.info(f"Database path set to {path}")
        return {
            'success': True,
            'message': f"Database path set to {path}",
            'user_message': f"✅ Database path set to {path}"
        }

    def get_database_path(self) -> str:
        return self._database_path

    def get_bot_token(self) -> Optional[str]:
        return self._bot_token

    def get_ai_api_key(self) -> Optional[str]:
        return self._ai_api_key

    def get_ai_model(self) -> str:
        return self._ai_model

    def get_api_address(self) -> tuple:
        return self._api_host, self._api_port

    def reset_to_defaults(self) -> None:
        """Reset quiz policy to default values; credentials are kept."""
        self._settings = QuizSettings(
            choice_labels=DEFAULT_CHOICE_LABELS,
            session_timeout_minutes=self.DEFAULT_SESSION_TIMEOUT_MINUTES,
            sweep_timeout_hours=self.DEFAULT_SWEEP_TIMEOUT_HOURS,
            sweep_interval_minutes=self.DEFAULT_SWEEP_INTERVAL_MINUTES,
            chunk_size=self.DEFAULT_CHUNK_SIZE,
            questions_per_quiz=self.DEFAULT_QUESTIONS_PER_QUIZ
        )
        self._database_path = self.DEFAULT_DATABASE_PATH
        self.logger.info("All settings reset to default values")

    def validate_settings(self) -> Dict[str, Any]:
        """
        Validate current settings and return validation results.

        Returns:
            Dictionary with validation results and any issues found
        """
        validation_result = {
            "valid": True,
            "issues": []
        }

        settings = self._settings
        if not (self.MIN_SESSION_TIMEOUT_MINUTES <= settings.session_timeout_minutes
                <= self.MAX_SESSION_TIMEOUT_MINUTES):
            validation_result["valid"] = False
            validation_result["issues"].append(
                f"Invalid session timeout: {settings.session_timeout_minutes}"
            )

        if settings.sweep_timeout_hours * 60 < settings.session_timeout_minutes:
            validation_result["valid"] = False
            validation_result["issues"].append(
                f"Invalid sweep timeout: {settings.sweep_timeout_hours}h is shorter than the session timeout"
            )

        if not (self.MIN_CHUNK_SIZE <= settings.chunk_size <= self.MAX_CHUNK_SIZE):
            validation_result["valid"] = False
            validation_result["issues"].append(f"Invalid chunk size: {settings.chunk_size}")

        if len(settings.choice_labels) < 2:
            validation_result["valid"] = False
            validation_result["issues"].append(f"Invalid choice labels: {settings.choice_labels}")

        if not isinstance(self._database_path, str) or not self._database_path.strip():
            validation_result["valid"] = False
            validation_result["issues"].append(f"Invalid database path: {self._database_path}")

        return validation_result

    def get_settings_summary(self) -> str:
        """
        Get a formatted summary of current settings.

        Returns:
            Human-readable string describing current settings
        """
        settings = self._settings
        return (
            f"Quiz Whiz Settings:\n"
            f"• Answer labels: {', '.join(settings.choice_labels)}\n"
            f"• Session timeout: {settings.session_timeout_minutes} minutes\n"
            f"• Sweep: every {settings.sweep_interval_minutes} minutes, "
            f"cutoff {settings.sweep_timeout_hours} hours\n"
            f"• Chunk size: {settings.chunk_size} characters\n"
            f"• Questions per generated quiz: {settings.questions_per_quiz}\n"
            f"• Database: {self._database_path}\n"
            f"• Telegram token: {'configured' if self._bot_token else 'missing'}\n"
            f"• AI key: {'configured' if self._ai_api_key else 'missing'}"
        )

    def get_configuration_health_check(self) -> Dict[str, Any]:
        """
        Perform a health check of the configuration.

        Returns:
            Dictionary with health status and recommendations
        """
        health_check = {
            'healthy': True,
            'warnings': [],
            'errors': [],
            'recommendations': []
        }

        validation_result = self.validate_settings()
        if not validation_result['valid']:
            health_check['healthy'] = False
            health_check['errors'].extend(
                f"❌ Configuration Issue: {issue}" for issue in validation_result['issues']
            )

        if not self._bot_token:
            health_check['warnings'].append("⚠️ Telegram bot token not configured; the bot will not start")
            health_check['recommendations'].append(
                "Set TELEGRAM_BOT_TOKEN or the 'token' field of the 'bot' section in config.json."
            )

        if not self._ai_api_key:
            health_check['warnings'].append("⚠️ Gemini API key not configured; quiz generation is disabled")
            health_check['recommendations'].append(
                "Set GEMINI_API_KEY or the 'api_key' field of the 'ai' section in config.json."
            )

        if self._database_path != ":memory:":
            db_dir = Path(self._database_path).parent
            if db_dir.exists() and not os.access(db_dir, os.W_OK):
                health_check['healthy'] = False
                health_check['errors'].append(f"❌ Cannot write to database directory: {db_dir}")

        return health_check
