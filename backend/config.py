import os
from typing import Any, Dict, List, Optional, Union

from dotenv import load_dotenv

# Pick up a .env colocated with the backend or at the repo root
load_dotenv(os.path.join(os.path.dirname(__file__), '.env'))
load_dotenv(os.path.join(os.path.dirname(os.path.dirname(__file__)), '.env'))


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.environ.get(name, str(default)) or default)
    except ValueError:
        return default


def _env_flag(name: str, default: str = '0') -> bool:
    return (os.environ.get(name, default) or default) not in ('0', 'false', 'False', '')


def _cors_origins() -> Union[str, List[str]]:
    """CORS_ORIGINS="*" or a comma-separated list of origins."""
    raw = (os.environ.get('CORS_ORIGINS', '*') or '*').strip()
    if raw == '*':
        return '*'
    return [o.strip() for o in raw.split(',') if o.strip()]


class Config:
    DB_PATH = os.environ.get('DB_PATH') or os.path.join(os.path.dirname(__file__), 'scrap_pickups.sqlite')
    CORS_ORIGINS = _cors_origins()
    MAX_CONTENT_LENGTH = _env_int('MAX_UPLOAD_MB', 25) * 1024 * 1024

    # Email OTP delivery; without SMTP_HOST codes are only logged
    SMTP_HOST = (os.environ.get('SMTP_HOST') or '').strip()
    SMTP_PORT = _env_int('SMTP_PORT', 587)
    SMTP_USER = os.environ.get('SMTP_USER')
    SMTP_PASS = os.environ.get('SMTP_PASS')
    SMTP_TLS = _env_flag('SMTP_TLS', '1')
    MAIL_FROM = (os.environ.get('MAIL_FROM') or 'no-reply@localhost').strip()
    DEV_MODE_OTP = os.environ.get('DEV_MODE_OTP') == '1'
    OTP_TTL_MINUTES = _env_int('OTP_TTL_MINUTES', 10)

    SCRAPER_FUNCTION_URL = (os.environ.get('SCRAPER_FUNCTION_URL') or '').strip()
    SCRAPER_TIMEOUT = _env_int('SCRAPER_TIMEOUT', 30)

    STREAM_KEEPALIVE_SECONDS = _env_int('STREAM_KEEPALIVE_SECONDS', 15)
    SEED_REWARDS = _env_flag('SEED_REWARDS', '1')
    PORT = _env_int('PORT', 5000)


def load_config(overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    settings = {k: getattr(Config, k) for k in dir(Config) if k.isupper()}
    if overrides:
        settings.update(overrides)
    return settings
