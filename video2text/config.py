"""
Environment-driven settings for the video2text client, CLI and proxy.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional
from urllib.parse import urlparse

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_FILE = Path.home() / '.video2text' / 'taskHistory.json'


def load_env_file(env_file: str = '.env'):
    """
    Load environment variables from a .env file without overriding existing ones.

    Args:
        env_file: Path to the .env file
    """
    env_path = Path(env_file)
    if not env_path.exists():
        logger.debug(f"Environment file not found: {env_file}")
        return

    load_dotenv(env_path, override=False)
    logger.info(f"Loaded environment variables from {env_file}")


def _env_list(name: str, default: str) -> List[str]:
    return [item.strip() for item in os.getenv(name, default).split(',') if item.strip()]


@dataclass
class Settings:
    """Runtime configuration."""
    dv_base: str = 'http://localhost:3000/api/dv'
    tv_base: str = 'http://localhost:3000/api/tv'
    dv_internal: str = 'http://dv:8866/dv'
    tv_internal: str = 'http://tv:6789'
    api_key: Optional[str] = None

    history_file: str = str(DEFAULT_HISTORY_FILE)
    history_bucket: Optional[str] = None
    history_key: str = 'taskHistory.json'
    aws_region: str = 'us-east-1'
    aws_profile: Optional[str] = None
    s3_endpoint: Optional[str] = None

    timeout: float = 6.0
    max_retries: int = 3
    retry_delay: float = 1.0
    download_poll_interval: float = 2.0
    transcription_poll_interval: float = 3.0
    max_poll_failures: int = 3
    success_threshold: int = 3
    stream_read_timeout: float = 60.0
    stream_reconnect_delay: float = 3.0

    download_quality: str = 'audio_low'
    model: str = 'base'
    languages: List[str] = field(default_factory=lambda: ['auto'])

    proxy_host: str = '0.0.0.0'
    proxy_port: int = 3000

    @classmethod
    def from_env(cls) -> "Settings":
        """Create settings from environment variables."""
        return cls(
            dv_base=os.getenv('DV_BASE', cls.dv_base),
            tv_base=os.getenv('TV_BASE', cls.tv_base),
            dv_internal=os.getenv('DV_INTERNAL', cls.dv_internal),
            tv_internal=os.getenv('TV_INTERNAL', cls.tv_internal),
            api_key=os.getenv('VIDEO2TEXT_API_KEY'),
            history_file=os.getenv('VIDEO2TEXT_HISTORY_FILE', cls.history_file),
            history_bucket=os.getenv('S3_HISTORY_BUCKET'),
            history_key=os.getenv('S3_HISTORY_KEY', cls.history_key),
            aws_region=os.getenv('AWS_REGION', cls.aws_region),
            aws_profile=os.getenv('AWS_PROFILE'),
            s3_endpoint=os.getenv('S3_ENDPOINT_URL'),
            timeout=float(os.getenv('VIDEO2TEXT_TIMEOUT', cls.timeout)),
            max_retries=int(os.getenv('VIDEO2TEXT_MAX_RETRIES', cls.max_retries)),
            retry_delay=float(os.getenv('VIDEO2TEXT_RETRY_DELAY', cls.retry_delay)),
            success_threshold=int(os.getenv('VIDEO2TEXT_SUCCESS_THRESHOLD', cls.success_threshold)),
            download_quality=os.getenv('VIDEO2TEXT_QUALITY', cls.download_quality),
            model=os.getenv('VIDEO2TEXT_MODEL', cls.model),
            languages=_env_list('VIDEO2TEXT_LANGUAGES', 'auto'),
            proxy_host=os.getenv('PROXY_HOST', cls.proxy_host),
            proxy_port=int(os.getenv('PROXY_PORT', cls.proxy_port)),
        )


def validate_settings(settings: Settings) -> List[str]:
    """
    Validate settings.

    Args:
        settings: Settings to validate

    Returns:
        List of validation error messages (empty if valid)
    """
    errors = []

    for name in ('dv_base', 'tv_base', 'dv_internal', 'tv_internal'):
        parsed = urlparse(getattr(settings, name) or '')
        if not parsed.scheme or not parsed.netloc:
            errors.append(f"Invalid {name} URL: {getattr(settings, name)!r}")

    if settings.timeout <= 0:
        errors.append("Timeout must be positive")

    if settings.max_retries < 1:
        errors.append("max_retries must be at least 1")

    if settings.retry_delay < 0:
        errors.append("retry_delay cannot be negative")

    if settings.success_threshold < 1:
        errors.append("success_threshold must be at least 1")

    if settings.model not in ('base', 'small'):
        errors.append(f"Unknown model option: {settings.model}")

    if not settings.languages:
        errors.append("At least one language is required")

    return errors
