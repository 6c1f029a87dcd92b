"""Configuration handling for the sales backend.

Settings live in an INI file named ``config.ini``. The helpers in this module
locate the file, parse it with :mod:`configparser`, and convert the raw values
into an immutable :class:`ConfigSettings` instance consumed by
:mod:`sales_erp.runtime`.
"""

from __future__ import annotations

import configparser
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError

from .constants import CACHE_TTL_SECONDS, RATE_LIMIT_REQUESTS, RATE_LIMIT_WINDOW_SECONDS


CONFIG_FILE_NAME = "config.ini"
DEFAULT_SMTP_PORT = 25


@dataclass(frozen=True)
class EmailSettings:
    """SMTP relay used to deliver receipts."""

    host: str
    port: int
    sender: str


@dataclass(frozen=True)
class RateLimitSettings:
    """Per client address request budget for the HTTP API."""

    requests: int = RATE_LIMIT_REQUESTS
    window_seconds: int = RATE_LIMIT_WINDOW_SECONDS


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    database_url: str
    cache_url: str
    cache_ttl: int
    receipt_directory: Path
    email: Optional[EmailSettings] = None
    rate_limit: RateLimitSettings = field(default_factory=RateLimitSettings)


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match is considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If no parent directory holds ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for directory in (current, *current.parents):
        candidate = directory / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config_path`` and return a populated ``ConfigParser``.

    Raises:
        FileNotFoundError: If the file does not exist after expanding ``~``
            and resolving the path.
    """

    config_path = Path(config_path).expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    Relative SQLite database files and the receipt directory are anchored to
    ``base_path`` (usually the directory holding ``config.ini``), or to the
    current working directory when no base is given. The ``[Email]`` section
    is optional; without it receipts are stored but not mailed. The optional
    ``[RateLimit]`` section overrides the default API request budget.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Anchor for relative paths.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If a required section or option is missing.
        ValueError: If a numeric option or the database URL is malformed.
    """

    if base_path is None:
        base_path = Path.cwd()

    try:
        database_url = parser.get("Database", "Url")
        cache_url = parser.get("Cache", "Url")
        receipt_directory_raw = parser.get("Storage", "ReceiptDirectory")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    cache_ttl = parser.getint("Cache", "TTLSeconds", fallback=CACHE_TTL_SECONDS)
    if cache_ttl <= 0:
        raise ValueError(f"Cache TTLSeconds must be positive, got {cache_ttl}")

    receipt_directory = Path(receipt_directory_raw).expanduser()
    if not receipt_directory.is_absolute():
        receipt_directory = (base_path / receipt_directory).resolve()

    return ConfigSettings(
        database_url=resolve_database_url(database_url, base_path),
        cache_url=cache_url,
        cache_ttl=cache_ttl,
        receipt_directory=receipt_directory,
        email=_parse_email(parser),
        rate_limit=_parse_rate_limit(parser),
    )


def resolve_database_url(raw_url: str, base_path: Path) -> str:
    """Anchor relative SQLite database files to ``base_path``.

    Non-SQLite URLs and in-memory SQLite databases are returned unchanged.
    """

    try:
        url = make_url(raw_url)
    except ArgumentError as exc:
        raise ValueError(f"Invalid database URL: {raw_url}") from exc

    if not url.drivername.startswith("sqlite"):
        return raw_url
    database = url.database
    if not database or database == ":memory:" or Path(database).is_absolute():
        return raw_url
    resolved = (base_path / database).resolve()
    return url.set(database=str(resolved)).render_as_string(hide_password=False)


def _parse_email(parser: configparser.ConfigParser) -> Optional[EmailSettings]:
    if not parser.has_section("Email"):
        return None
    try:
        host = parser.get("Email", "Host")
        sender = parser.get("Email", "Sender")
    except configparser.NoOptionError as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc
    port = parser.getint("Email", "Port", fallback=DEFAULT_SMTP_PORT)
    return EmailSettings(host=host, port=port, sender=sender)


def _parse_rate_limit(parser: configparser.ConfigParser) -> RateLimitSettings:
    requests = parser.getint("RateLimit", "Requests", fallback=RATE_LIMIT_REQUESTS)
    window_seconds = parser.getint("RateLimit", "WindowSeconds", fallback=RATE_LIMIT_WINDOW_SECONDS)
    if requests <= 0 or window_seconds <= 0:
        raise ValueError(
            f"RateLimit Requests and WindowSeconds must be positive, got {requests} and {window_seconds}"
        )
    return RateLimitSettings(requests=requests, window_seconds=window_seconds)


def load_settings(config_path: Optional[Path] = None) -> ConfigSettings:
    """Locate, read and parse ``config.ini`` in one call."""

    located = Path(find_config_file(config_path)).expanduser().resolve()
    parser = read_config(located)
    return parse_settings(parser, base_path=located.parent)
