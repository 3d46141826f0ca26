import os
import logging

from dotenv import load_dotenv


def load_env() -> None:
    """Load environment variables from a .env file if available."""
    load_dotenv()


# Load env early
load_env()

# Logging configuration
log_level = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    level=getattr(logging, log_level, logging.INFO),
)
logger = logging.getLogger("tmtracker")

# Reduce noisy libraries
logging.getLogger("httpcore").setLevel(logging.WARNING)
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("telegram.ext.ExtBot").setLevel(logging.WARNING)
logging.getLogger("telegram.ext.Updater").setLevel(logging.WARNING)
logging.getLogger("telegram.ext.Application").setLevel(logging.WARNING)
logging.getLogger("telegram.bot").setLevel(logging.WARNING)
logging.getLogger("aiosqlite").setLevel(logging.WARNING)
logging.getLogger("asyncio").setLevel(logging.WARNING)


class Config:
    """Application configuration read from the environment."""

    # Telegram Bot Configuration
    BOT_TOKEN: str | None = os.getenv("BOT_TOKEN")
    ALLOWED_USER_ID: int = int(os.getenv("ALLOWED_USER_ID", "0"))

    # Ubisoft / Nadeo credentials
    UBI_EMAIL: str = os.getenv("UBI_EMAIL", "").strip()
    UBI_PASSWORD: str = os.getenv("UBI_PASSWORD", "").strip()
    USER_AGENT: str = os.getenv("USER_AGENT", "tmtracker / records bot").strip()

    # Public API OAuth (display names), optional
    TM_OAUTH_CLIENT_ID: str = os.getenv("TM_OAUTH_CLIENT_ID", "").strip()
    TM_OAUTH_CLIENT_SECRET: str = os.getenv("TM_OAUTH_CLIENT_SECRET", "").strip()

    DB_PATH: str = os.getenv("DB_PATH", "data/trackmania.db")

    # Polling schedule
    CAMPAIGN_CHECK_MINUTES: int = int(os.getenv("CAMPAIGN_CHECK_MINUTES", "15"))
    WEEKLY_SHORTS_CHECK_MINUTES: int = int(os.getenv("WEEKLY_SHORTS_CHECK_MINUTES", "30"))
    INITIAL_CHECK_DELAY_SECS: float = float(os.getenv("INITIAL_CHECK_DELAY_SECS", "5"))
    DISPLAY_NAME_REFRESH_HOURS: int = int(os.getenv("DISPLAY_NAME_REFRESH_HOURS", "24"))

    # Upstream client
    MIN_REQUEST_INTERVAL_SECS: float = float(os.getenv("MIN_REQUEST_INTERVAL_SECS", "0.8"))
    TOKEN_TTL_SECS: int = int(os.getenv("TOKEN_TTL_SECS", "3600"))
    AUTH_RETRY_ATTEMPTS: int = int(os.getenv("AUTH_RETRY_ATTEMPTS", "2"))

    # Announcements
    ANNOUNCE_DELAY_SECS: float = float(os.getenv("ANNOUNCE_DELAY_SECS", "0.25"))
    DEFAULT_MIN_POSITION: int = int(os.getenv("DEFAULT_MIN_POSITION", "5000"))
    WEEKLY_SHORTS_MAX_POSITION: int = int(os.getenv("WEEKLY_SHORTS_MAX_POSITION", "10000"))

    # Task queues: (concurrency, max backlog)
    API_QUEUE_CONCURRENCY: int = int(os.getenv("API_QUEUE_CONCURRENCY", "1"))
    API_QUEUE_BACKLOG: int = int(os.getenv("API_QUEUE_BACKLOG", "100"))
    COMMAND_QUEUE_CONCURRENCY: int = int(os.getenv("COMMAND_QUEUE_CONCURRENCY", "4"))
    COMMAND_QUEUE_BACKLOG: int = int(os.getenv("COMMAND_QUEUE_BACKLOG", "100"))
    BACKGROUND_QUEUE_CONCURRENCY: int = int(os.getenv("BACKGROUND_QUEUE_CONCURRENCY", "1"))
    BACKGROUND_QUEUE_BACKLOG: int = int(os.getenv("BACKGROUND_QUEUE_BACKLOG", "100"))

    @classmethod
    def validate_config(cls) -> None:
        if not cls.BOT_TOKEN:
            raise ValueError("BOT_TOKEN environment variable is required")
        if cls.ALLOWED_USER_ID == 0:
            raise ValueError("ALLOWED_USER_ID environment variable is required")
        if not cls.UBI_EMAIL or not cls.UBI_PASSWORD:
            raise ValueError("UBI_EMAIL and UBI_PASSWORD environment variables are required")
        if not cls.TM_OAUTH_CLIENT_ID or not cls.TM_OAUTH_CLIENT_SECRET:
            logger.warning("TM_OAUTH_CLIENT_ID/SECRET not configured - display names will not be refreshed")


config = Config()
BOT_TOKEN = config.BOT_TOKEN
ALLOWED_USER_ID = config.ALLOWED_USER_ID
DB_PATH = config.DB_PATH

# Upstream endpoints
UBI_SESSION_URL = "https://public-ubiservices.ubi.com/v3/profiles/sessions"
UBI_APP_ID = "86263886-327a-4328-ac69-527f0d20a237"
CORE_URL = "https://prod.trackmania.core.nadeo.online"
LIVE_URL = "https://live-services.trackmania.nadeo.live"
PUBLIC_API_URL = "https://api.trackmania.com"

AUDIENCE_CORE = "NadeoServices"
AUDIENCE_LIVE = "NadeoLiveServices"

# Leaderboard pagination
LEADERBOARD_PAGE_SIZE = 100
LEADERBOARD_MAX_OFFSET = 10000

# Bounds accepted by admin commands
MIN_POSITION_RANGE = (1, 100000)
SEARCH_INTERVAL_RANGE = (5, 1440)

DISPLAY_NAME_BATCH_SIZE = 50
DISPLAY_NAME_BATCH_DELAY_SECS = 0.25

SUPPORTED_LANGUAGES = ("en", "es")

COUNTRY_NAMES = {
    "CHI": "Chile",
}

# Zone names that count as part of each country on the world leaderboard
REGIONS = {
    "CHI": [
        "Chile",
        "Aisen",
        "Antofagasta",
        "Araucania",
        "Arica y Parinacota",
        "Atacama",
        "Biobio",
        "Coquimbo",
        "Los Lagos",
        "Los Rios",
        "Magallanes y Antartica",
        "Maule",
        "OHiggins",
        "Santiago",
        "Tarapaca",
        "Valparaiso",
    ],
}
DEFAULT_COUNTRY = "CHI"
