import os
import logging
from dataclasses import dataclass, fields
from pathlib import Path

logger = logging.getLogger(__name__)

# Full list of settings to manage
ALL_SETTINGS = [
    # System
    'LOG_LEVEL', 'DATA_DIR', 'BOOKS_DIR',

    # Locations
    'LOCATIONS_BREAK', 'LOCATIONS_PAUSE_MS',

    # Addressing
    'CFI_IGNORE_CLASS', 'HTML_PARSER', 'FUZZY_MATCH_THRESHOLD',

    # Books
    'EBOOK_CACHE_SIZE',
]

# Default values
DEFAULT_CONFIG = {
    'LOG_LEVEL': 'INFO',
    'DATA_DIR': '/data',
    'BOOKS_DIR': '/books',
    'LOCATIONS_BREAK': '150',
    'LOCATIONS_PAUSE_MS': '100',
    'CFI_IGNORE_CLASS': '',
    'HTML_PARSER': 'html.parser',
    'EBOOK_CACHE_SIZE': '3',
    'FUZZY_MATCH_THRESHOLD': '80',
}


def get_setting(key: str, environ=None) -> str:
    # Priority: 1. Env Var, 2. Default, 3. Empty string
    environ = os.environ if environ is None else environ
    val = environ.get(key)
    if val is None or val == "":
        val = DEFAULT_CONFIG.get(key, "")
    return val


def _int_setting(key: str, environ=None) -> int:
    raw = get_setting(key, environ)
    try:
        return int(raw)
    except (TypeError, ValueError):
        logger.warning(f"⚠️ Invalid value '{raw}' for {key}, using default {DEFAULT_CONFIG[key]}")
        return int(DEFAULT_CONFIG[key])


@dataclass(frozen=True)
class ReaderConfig:
    """
    Settings for one reading session, built once and passed to whatever needs them.

    `ignore_class` is the CSS class of injected markup (highlights, TTS
    marks) that must not change addresses; empty means none.
    """
    log_level: str = 'INFO'
    data_dir: Path = Path('/data')
    books_dir: Path = Path('/books')
    locations_break: int = 150
    locations_pause_ms: int = 100
    ignore_class: str = ''
    html_parser: str = 'html.parser'
    ebook_cache_size: int = 3
    fuzzy_threshold: int = 80

    @classmethod
    def from_env(cls, environ=None) -> "ReaderConfig":
        config = cls(
            log_level=get_setting('LOG_LEVEL', environ).upper(),
            data_dir=Path(get_setting('DATA_DIR', environ)),
            books_dir=Path(get_setting('BOOKS_DIR', environ)),
            locations_break=_int_setting('LOCATIONS_BREAK', environ),
            locations_pause_ms=_int_setting('LOCATIONS_PAUSE_MS', environ),
            ignore_class=get_setting('CFI_IGNORE_CLASS', environ),
            html_parser=get_setting('HTML_PARSER', environ),
            ebook_cache_size=_int_setting('EBOOK_CACHE_SIZE', environ),
            fuzzy_threshold=_int_setting('FUZZY_MATCH_THRESHOLD', environ),
        )
        if config.locations_break <= 0:
            logger.warning(f"⚠️ LOCATIONS_BREAK must be positive, using {DEFAULT_CONFIG['LOCATIONS_BREAK']}")
            config = cls(**{**config.as_dict(), 'locations_break': int(DEFAULT_CONFIG['LOCATIONS_BREAK'])})
        return config

    def as_dict(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @property
    def location_store_path(self) -> Path:
        return self.data_dir / 'locations.json'

    @property
    def log_dir(self) -> Path:
        return self.data_dir / 'logs'
