import os
import logging
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    # Database & logging
    database_url: str = os.getenv("ELIB_DB", "sqlite:///./library.db")
    log_level: str = os.getenv("ELIB_LOG", "INFO")
    debug: bool = _env_bool("ELIB_DEBUG")

    # JWT
    jwt_secret: str = os.getenv("JWT_SECRET", "change-me-library-management-system-secret")
    jwt_algorithm: str = "HS256"
    jwt_expire_minutes: int = int(os.getenv("JWT_EXPIRE_MINUTES", str(7 * 24 * 60)))
    jwt_issuer: str = os.getenv("JWT_ISSUER", "library-management-system")
    jwt_audience: str = os.getenv("JWT_AUDIENCE", "library-users")

    # Passwords
    bcrypt_rounds: int = int(os.getenv("BCRYPT_ROUNDS", "12"))

    # Borrowing rules
    max_active_borrows: int = int(os.getenv("MAX_ACTIVE_BORROWS", "5"))
    default_due_days: int = int(os.getenv("DEFAULT_DUE_DAYS", "14"))
    default_extension_days: int = int(os.getenv("DEFAULT_EXTENSION_DAYS", "7"))
    late_fee_daily_rate: float = float(os.getenv("LATE_FEE_DAILY_RATE", "1.0"))

    # Rate limiting (requests per window)
    rate_limit_enabled: bool = _env_bool("RATE_LIMIT_ENABLED", "true")
    rate_limit_window_seconds: int = int(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "60"))
    rate_limit_guest: int = int(os.getenv("RATE_LIMIT_GUEST", "20"))
    rate_limit_user: int = int(os.getenv("RATE_LIMIT_USER", "60"))
    rate_limit_librarian: int = int(os.getenv("RATE_LIMIT_LIBRARIAN", "120"))
    rate_limit_admin: int = int(os.getenv("RATE_LIMIT_ADMIN", "300"))


settings = Settings()


def configure_logging() -> logging.Logger:
    logging.basicConfig(level=settings.log_level,
                        format="%(asctime)s %(levelname)s %(name)s - %(message)s")
    logger = logging.getLogger("library_api")
    if len(settings.jwt_secret) < 32:
        logger.warning("JWT_SECRET is shorter than 32 characters; use a stronger secret")
    return logger
