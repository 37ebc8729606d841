import logging
import os
from dataclasses import dataclass, field
from typing import Optional, Tuple

from dotenv import load_dotenv

from .budget import DEFAULT_BUFFER_SECONDS

PLACEHOLDER_KEY = "your_api_key_here"
DEFAULT_PLACE_CATEGORIES = ('city', 'town', 'village', 'populated place')
DEFAULT_PLACE_RESULT_CAP = 100
DEFAULT_REQUEST_TIMEOUT = 20.0
DEFAULT_TRAVEL_MODE = "driving"
DEFAULT_SESSION_IDLE_TIMEOUT = 3600.0
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def _clean_key(value: Optional[str]) -> Optional[str]:
    if not value or value == PLACEHOLDER_KEY:
        return None
    return value


@dataclass(frozen=True)
class Settings:
    google_maps_api_key: Optional[str] = None
    azure_maps_key: Optional[str] = None
    buffer_seconds: int = DEFAULT_BUFFER_SECONDS
    place_categories: Tuple[str, ...] = field(default=DEFAULT_PLACE_CATEGORIES)
    place_result_cap: int = DEFAULT_PLACE_RESULT_CAP
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    travel_mode: str = DEFAULT_TRAVEL_MODE
    session_idle_timeout: float = DEFAULT_SESSION_IDLE_TIMEOUT
    log_file: Optional[str] = "app.log"

    @classmethod
    def from_env(cls, dotenv_path: Optional[str] = None) -> "Settings":
        """Read settings from the environment, loading .env first"""
        load_dotenv(dotenv_path=dotenv_path)
        categories = os.getenv('MEETZONE_PLACE_CATEGORIES')
        if categories:
            parsed = tuple(c.strip() for c in categories.split(',') if c.strip())
        else:
            parsed = DEFAULT_PLACE_CATEGORIES
        return cls(
            google_maps_api_key=_clean_key(os.getenv('GOOGLE_MAPS_API_KEY')),
            azure_maps_key=_clean_key(os.getenv('AZURE_MAPS_KEY')),
            buffer_seconds=int(os.getenv('MEETZONE_BUFFER_SECONDS', DEFAULT_BUFFER_SECONDS)),
            place_categories=parsed,
            place_result_cap=int(os.getenv('MEETZONE_PLACE_RESULT_CAP', DEFAULT_PLACE_RESULT_CAP)),
            request_timeout=float(os.getenv('MEETZONE_REQUEST_TIMEOUT', DEFAULT_REQUEST_TIMEOUT)),
            travel_mode=os.getenv('MEETZONE_TRAVEL_MODE', DEFAULT_TRAVEL_MODE),
            session_idle_timeout=float(os.getenv('MEETZONE_SESSION_IDLE_TIMEOUT', DEFAULT_SESSION_IDLE_TIMEOUT)),
            log_file=os.getenv('MEETZONE_LOG_FILE', 'app.log') or None,
        )

    @property
    def has_google_key(self) -> bool:
        return self.google_maps_api_key is not None

    @property
    def has_azure_key(self) -> bool:
        return self.azure_maps_key is not None


def configure_logging(settings: Settings, level: int = logging.INFO) -> None:
    handlers = [logging.StreamHandler()]
    if settings.log_file:
        handlers.insert(0, logging.FileHandler(settings.log_file))
    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers)
