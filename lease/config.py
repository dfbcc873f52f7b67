import os
import logging
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()

class Config:
    # Telegram bot token (OPTIONAL - notifications are only logged without it)
    BOT_TOKEN = os.getenv("BOT_TOKEN")

    # Database Configuration
    DB_USER = os.getenv("DB_USER", "postgres")
    DB_PASS = os.getenv("DB_PASS", "postgres")
    DB_HOST = os.getenv("DB_HOST", "localhost")
    DB_PORT = os.getenv("DB_PORT", "5432")
    DB_NAME = os.getenv("DB_NAME", "rental_leases")

    @property
    def DATABASE_URL(self):
        # Prefer DATABASE_URL env var if set (for SQLite support)
        url = os.getenv("DATABASE_URL")
        if url:
            return url

        return f"postgresql+asyncpg://{self.DB_USER}:{self.DB_PASS}@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"

    # Billing
    RENT_CYCLE_DAYS = int(os.getenv("RENT_CYCLE_DAYS", "30"))
    DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "UGX")

    # Termination
    DEFAULT_GRACE_DAYS = int(os.getenv("DEFAULT_GRACE_DAYS", "7"))
    BREACH_REMEDY_DAYS = int(os.getenv("BREACH_REMEDY_DAYS", "14"))
    EVIDENCE_DIR = Path(os.getenv("EVIDENCE_DIR", "./evidence"))

    # Scheduler must run at least as often as the shortest grace period
    SCHEDULER_INTERVAL_MINUTES = int(os.getenv("SCHEDULER_INTERVAL_MINUTES", "5"))

    NOTIFICATION_MAX_ATTEMPTS = int(os.getenv("NOTIFICATION_MAX_ATTEMPTS", "3"))

config = Config()

logging.info(f"Database: {config.DATABASE_URL.split('@')[1] if '@' in config.DATABASE_URL else 'SQLite'}")
logging.info(f"Telegram notifications: {'enabled' if config.BOT_TOKEN else 'disabled (log only)'}")
