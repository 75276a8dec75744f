"""
Unit tests for ConfigManager class.
"""
import logging
import os
import unittest
from unittest.mock import patch

from quizwhiz.config_manager import ConfigManager
from quizwhiz.models import QuizSettings


class TestConfigManager(unittest.TestCase):
    """Test cases for ConfigManager functionality."""

    def setUp(self):
        """Set up test fixtures before each test method."""
        self.config_manager = ConfigManager()

        # Suppress logging during tests
        logging.disable(logging.CRITICAL)

    def tearDown(self):
        logging.disable(logging.NOTSET)

    def test_initialization_with_defaults(self):
        """Test that ConfigManager initializes with correct default values."""
        settings = self.config_manager.get_quiz_settings()

        self.assertIsInstance(settings, QuizSettings)
        self.assertEqual(settings.choice_labels, ("A", "B", "C", "D"))
        self.assertEqual(settings.session_timeout_minutes, 60)
        self.assertEqual(settings.sweep_timeout_hours, 24)
        self.assertEqual(settings.sweep_interval_minutes, 10)
        self.assertEqual(settings.chunk_size, 1500)
        self.assertEqual(settings.questions_per_quiz, 10)
        self.assertEqual(self.config_manager.get_database_path(), "./data/quiz_whiz.db")
        self.assertEqual(self.config_manager.get_api_address(), ("0.0.0.0", 3001))

    def test_get_quiz_settings_returns_copy(self):
        settings = self.config_manager.get_quiz_settings()
        settings.session_timeout_minutes = 999

        self.assertEqual(self.config_manager.get_session_timeout(), 60)

    def test_set_session_timeout_valid_and_invalid(self):
        result = self.config_manager.set_session_timeout(30)
        self.assertTrue(result['success'])
        self.assertIn("30 minutes", result['user_message'])
        self.assertEqual(self.config_manager.get_session_timeout(), 30)

        for bad in (0, -5, 24 * 60 + 1, "30", 2.5, True, None):
            result = self.config_manager.set_session_timeout(bad)
            self.assertFalse(result['success'], bad)
            self.assertIn('error', result)
            self.assertTrue(result['user_message'].startswith("❌"))
        self.assertEqual(self.config_manager.get_session_timeout(), 30)

    def test_set_sweep_settings(self):
        self.assertTrue(self.config_manager.set_sweep_timeout(48)['success'])
        self.assertTrue(self.config_manager.set_sweep_interval(5)['success'])
        self.assertFalse(self.config_manager.set_sweep_interval(0)['success'])

        self.assertEqual(self.config_manager.get_sweep_timeout(), 48)
        self.assertEqual(self.config_manager.get_sweep_interval(), 5)

    def test_set_chunk_size_and_question_count(self):
        self.assertTrue(self.config_manager.set_chunk_size(2000)['success'])
        self.assertFalse(self.config_manager.set_chunk_size(10)['success'])
        self.assertTrue(self.config_manager.set_questions_per_quiz(5)['success'])
        self.assertFalse(self.config_manager.set_questions_per_quiz(51)['success'])

        settings = self.config_manager.get_quiz_settings()
        self.assertEqual(settings.chunk_size, 2000)
        self.assertEqual(settings.questions_per_quiz, 5)

    def test_set_choice_labels(self):
        result = self.config_manager.set_choice_labels(["a", "b", "c"])
        self.assertTrue(result['success'])
        self.assertEqual(self.config_manager.get_choice_labels(), ("A", "B", "C"))

        for bad in (["A"], "ABCD", ["A", "A"], ["AB", "C"], ["1", "2"]):
            self.assertFalse(self.config_manager.set_choice_labels(bad)['success'], bad)
        self.assertEqual(self.config_manager.get_choice_labels(), ("A", "B", "C"))

    def test_set_database_path(self):
        self.assertTrue(self.config_manager.set_database_path(":memory:")['success'])
        self.assertEqual(self.config_manager.get_database_path(), ":memory:")
        self.assertFalse(self.config_manager.set_database_path("   ")['success'])
        self.assertEqual(self.config_manager.get_database_path(), ":memory:")

    @patch.dict(os.environ, {}, clear=True)
    def test_load_from_dict_applies_sections(self):
        rejected = self.config_manager.load_from_dict({
            'bot': {'token': 'abc:123'},
            'ai': {'api_key': 'key', 'model': 'gemini-test'},
            'database': {'path': ':memory:'},
            'server': {'host': '127.0.0.1', 'port': '8080'},
            'quiz': {'session_timeout_minutes': 15, 'choice_labels': ['A', 'B', 'C']}
        })

        self.assertEqual(rejected, [])
        self.assertEqual(self.config_manager.get_bot_token(), 'abc:123')
        self.assertEqual(self.config_manager.get_ai_api_key(), 'key')
        self.assertEqual(self.config_manager.get_ai_model(), 'gemini-test')
        self.assertEqual(self.config_manager.get_database_path(), ':memory:')
        self.assertEqual(self.config_manager.get_api_address(), ('127.0.0.1', 8080))
        self.assertEqual(self.config_manager.get_session_timeout(), 15)
        self.assertEqual(self.config_manager.get_choice_labels(), ('A', 'B', 'C'))

    @patch.dict(os.environ, {}, clear=True)
    def test_load_from_dict_keeps_defaults_for_rejected_values(self):
        rejected = self.config_manager.load_from_dict({
            'bot': {'token': 'YOUR_TELEGRAM_BOT_TOKEN_HERE'},
            'server': {'port': 'not-a-port'},
            'quiz': {'session_timeout_minutes': -1, 'chunk_size': 'big'}
        })

        self.assertEqual(len(rejected), 3)
        self.assertIsNone(self.config_manager.get_bot_token())
        self.assertEqual(self.config_manager.get_session_timeout(), 60)
        self.assertEqual(self.config_manager.get_quiz_settings().chunk_size, 1500)

    @patch.dict(os.environ, {'TELEGRAM_BOT_TOKEN': 'env-token', 'QUIZWHIZ_API_PORT': '9000'}, clear=True)
    def test_environment_overrides_config_file(self):
        self.config_manager.load_from_dict({'bot': {'token': 'file-token'}, 'server': {'port': 3001}})

        self.assertEqual(self.config_manager.get_bot_token(), 'env-token')
        self.assertEqual(self.config_manager.get_api_address()[1], 9000)

    def test_reset_to_defaults(self):
        self.config_manager.set_session_timeout(5)
        self.config_manager.set_choice_labels(["X", "Y"])

        self.config_manager.reset_to_defaults()

        self.assertEqual(self.config_manager.get_session_timeout(), 60)
        self.assertEqual(self.config_manager.get_choice_labels(), ("A", "B", "C", "D"))

    def test_validate_settings_flags_sweep_shorter_than_session(self):
        self.config_manager.set_session_timeout(180)
        self.config_manager.set_sweep_timeout(1)

        result = self.config_manager.validate_settings()

        self.assertFalse(result['valid'])
        self.assertTrue(any("sweep timeout" in issue for issue in result['issues']))

    @patch.dict(os.environ, {}, clear=True)
    def test_health_check_warns_about_missing_credentials(self):
        self.config_manager.set_database_path(":memory:")

        health = self.config_manager.get_configuration_health_check()

        self.assertTrue(health['healthy'])
        self.assertEqual(len(health['warnings']), 2)
        self.assertEqual(len(health['recommendations']), 2)

    def test_settings_summary_mentions_policy(self):
        summary = self.config_manager.get_settings_summary()

        self.assertIn("A, B, C, D", summary)
        self.assertIn("60 minutes", summary)


if __name__ == '__main__':
    unittest.main()
