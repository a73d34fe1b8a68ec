"""
Application configuration and environment variables
"""
import os
from dotenv import load_dotenv

# Load environment variables
load_dotenv()


class Settings:
    """Application settings loaded from environment variables"""

    # Remote service
    SUPABASE_URL: str = os.getenv("SUPABASE_URL", "")
    SUPABASE_KEY: str = os.getenv("SUPABASE_KEY", "")

    # Time
    APP_TIMEZONE: str = os.getenv("APP_TIMEZONE", "UTC")

    # Local store
    LOCAL_STORE_PATH: str = os.getenv("LOCAL_STORE_PATH", ".habitsync/store.json")

    # Sync
    SYNC_MAX_ATTEMPTS: int = int(os.getenv("SYNC_MAX_ATTEMPTS", "5"))
    REMOTE_TIMEOUT_SECONDS: float = float(os.getenv("REMOTE_TIMEOUT_SECONDS", "10"))
    CONNECTIVITY_CHECK_INTERVAL_SECONDS: int = int(os.getenv("CONNECTIVITY_CHECK_INTERVAL_SECONDS", "15"))

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")


# Create a global settings instance
settings = Settings()
