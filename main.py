#!/usr/bin/env python3
"""
Quiz Whiz - Main Entry Point

Runs the Telegram quiz bot, the dashboard HTTP API and the stale-session
sweeper on one event loop.

Usage:
    python main.py

Configuration:
    1. Copy config.example.json to config.json
    2. Set your Telegram bot token and Gemini API key there, or in .env
    3. Customize quiz and server settings in config.json as needed

Environment Variables:
    TELEGRAM_BOT_TOKEN: Telegram bot token (overrides config.json)
    GEMINI_API_KEY: Gemini API key for quiz generation
    QUIZWHIZ_DB_PATH: SQLite database file
    QUIZWHIZ_API_PORT: Port of the HTTP API
"""

import asyncio
import json
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv

from quizwhiz.api_server import ApiServices, build_api_server, create_app
from quizwhiz.bot import QuizWhizBot
from quizwhiz.config_manager import ConfigManager
from quizwhiz.data_manager import DataManager
from quizwhiz.database import DatabaseConnection
from quizwhiz.quiz_controller import QuizController
from quizwhiz.quiz_engine import SweepTimer
from quizwhiz.quiz_generator import QuizGenerator
from quizwhiz.recipient_manager import RecipientManager


def load_config():
    """Load configuration from config.json; an absent file means defaults."""
    config_path = Path("config.json")

    if not config_path.exists():
        print("⚠️ config.json not found, using defaults and environment variables")
        return {}

    try:
        with open(config_path, 'r', encoding='utf-8') as f:
            return json.load(f)
    except json.JSONDecodeError as e:
        print(f"❌ Error: Invalid JSON in config.json: {e}")
        sys.exit(1)


def setup_logging_from_config(config):
    """Set up logging based on configuration."""
    log_config = config.get('logging', {})
    log_level = getattr(logging, log_config.get('level', 'INFO').upper(), logging.INFO)
    log_directory = Path(log_config.get('log_directory', './logs/'))

    log_directory.mkdir(parents=True, exist_ok=True)

    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler(log_directory / "quiz_whiz.log", encoding='utf-8')
        ]
    )

    error_handler = logging.FileHandler(log_directory / "errors.log", encoding='utf-8')
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s'))
    logging.getLogger().addHandler(error_handler)

    # Reduce library noise
    for name in ('telegram', 'httpx', 'uvicorn.access'):
        logging.getLogger(name).setLevel(logging.WARNING)


async def run_with_config():
    """Wire every component and run until the HTTP server exits."""
    load_dotenv()
    config = load_config()
    setup_logging_from_config(config)
    logger = logging.getLogger("quizwhiz")

    config_manager = ConfigManager()
    for message in config_manager.load_from_dict(config):
        logger.warning(message)
    logger.info(config_manager.get_settings_summary())

    db = DatabaseConnection(config_manager.get_database_path())
    db.connect()
    data_manager = DataManager(db)
    recipient_manager = RecipientManager(data_manager)
    quiz_controller = QuizController(data_manager, config_manager)
    quiz_generator = QuizGenerator(data_manager, config_manager)

    bot = None
    if config_manager.get_bot_token():
        bot = QuizWhizBot(config_manager.get_bot_token(), quiz_controller, recipient_manager, config_manager)
    else:
        logger.warning("TELEGRAM_BOT_TOKEN not set; running the HTTP API without the bot")

    sweeper = SweepTimer(quiz_controller.expire_stale, config_manager.get_sweep_interval() * 60)
    app = create_app(ApiServices(quiz_controller, recipient_manager, quiz_generator, bot))
    host, port = config_manager.get_api_address()
    server = build_api_server(app, host, port)

    try:
        if bot is not None and config.get('bot', {}).get('autostart', True):
            await bot.start()
        sweeper.start()
        logger.info(f"Quiz Whiz API listening on {host}:{port}")
        await server.serve()
    finally:
        await sweeper.stop()
        if bot is not None:
            await bot.stop()
        db.close()


if __name__ == "__main__":
    try:
        print("🎓 Starting Quiz Whiz...")
        asyncio.run(run_with_config())
    except KeyboardInterrupt:
        print("\n👋 Quiz Whiz stopped by user")
    except Exception as e:
        print(f"❌ Failed to start Quiz Whiz: {e}")
        sys.exit(1)
