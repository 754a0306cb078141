"""Configuration management for the WiseTime Allisa connector."""

import json
import logging
import os
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Mapping, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from platformdirs import user_config_dir, user_data_dir, user_log_dir

from .errors import ConfigError

__all__ = [
    "Config",
    "WiseTimeSettings",
    "AllisaSettings",
    "SyncSettings",
    "TagSyncSettings",
    "MappingSettings",
    "setup_logging",
    "parse_field_mapping",
    "DEFAULT_WISETIME_API_URL",
    "DEFAULT_POST_FIELD_MAPPING",
    "REQUIRED_POST_FIELDS",
    "DEFAULT_TAG_UPSERT_PATH",
    "MAX_BATCH_SIZE",
]

logger = logging.getLogger(__name__)

APP_NAME = "WiseTime Allisa Connector"
APP_AUTHOR = "WiseTime"

DEFAULT_CONNECTOR_ID = "wisetime-allisa-connector"

# API endpoints
DEFAULT_WISETIME_API_URL = "https://wisetime.com/connect/api"

# Allisa form field mapping, `key:field` pairs
DEFAULT_POST_FIELD_MAPPING = (
    "pid:pid,userId:userId,narrative:narrative,startDateTime:startDateTime,"
    "totalTimeSecs:totalTimeSecs,chargeableTimeSecs:chargeableTimeSecs,activityCode:activityCode"
)
REQUIRED_POST_FIELDS = frozenset(
    {"pid", "userId", "narrative", "startDateTime", "totalTimeSecs", "chargeableTimeSecs", "activityCode"}
)

# Sync settings
DEFAULT_SYNC_INTERVAL = 60  # seconds
DEFAULT_BATCH_SIZE = 100
MAX_BATCH_SIZE = 1000

# Tag sync settings
DEFAULT_TAG_UPSERT_PATH = "/Allisa/"
DEFAULT_TAG_UPSERT_BATCH_SIZE = 500  # large pages mitigate query round trip latency

_TRUE_VALUES = {"1", "true", "yes", "on"}


def parse_field_mapping(mapping: str) -> dict[str, str]:
    """Parse `key:field,key:field` into a dict.

    Raises:
        ConfigError: Malformed pair or a required key is missing
    """
    result: dict[str, str] = {}
    for item in mapping.split(","):
        if not item.strip():
            continue
        parts = item.split(":")
        if len(parts) != 2 or not parts[0].strip() or not parts[1].strip():
            raise ConfigError(f"Invalid post field mapping: {item}")
        result[parts[0].strip()] = parts[1].strip()

    missing = REQUIRED_POST_FIELDS - result.keys()
    if missing:
        raise ConfigError(
            f"Invalid post field mapping. Missing fields: {', '.join(sorted(missing))}"
        )
    return result


@dataclass
class WiseTimeSettings:
    """WiseTime (source) connection settings."""

    api_key: Optional[str] = None
    api_url: str = DEFAULT_WISETIME_API_URL


@dataclass
class AllisaSettings:
    """Allisa (target) connection settings."""

    api_key: Optional[str] = None
    base_url: Optional[str] = None
    case_type: Optional[str] = None
    post_type: Optional[str] = None
    post_field_mapping: str = DEFAULT_POST_FIELD_MAPPING

    @property
    def case_url_prefix(self) -> str:
        """Prefix for links from WiseTime tags back to Allisa cases."""
        return f"{(self.base_url or '').rstrip('/')}/projekt/show/ID/"


@dataclass
class SyncSettings:
    """Posted-time sync configuration."""

    interval_seconds: int = DEFAULT_SYNC_INTERVAL
    batch_size: int = DEFAULT_BATCH_SIZE
    max_retries: int = 3  # in-cycle retries per Allisa request
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0
    max_delivery_attempts: int = 5  # failed cycles before a record is dead-lettered
    workers: int = 4
    cycle_timeout_seconds: int = 300
    request_timeout_seconds: int = 30


@dataclass
class TagSyncSettings:
    """Allisa case -> WiseTime tag sync configuration."""

    enabled: bool = True
    upsert_path: str = DEFAULT_TAG_UPSERT_PATH
    batch_size: int = DEFAULT_TAG_UPSERT_BATCH_SIZE
    interval_seconds: int = 300
    refresh_interval_seconds: int = 900


@dataclass
class MappingSettings:
    """How postings are rendered for Allisa."""

    timezone: str = "UTC"
    add_summary_to_narrative: bool = False


# Environment variable -> (section, attribute, type)
ENV_KEYS: dict[str, tuple[Optional[str], str, type]] = {
    "CONNECTOR_ID": (None, "connector_id", str),
    "DATA_DIR": (None, "data_dir", str),
    "API_KEY": ("wisetime", "api_key", str),
    "WISETIME_API_URL": ("wisetime", "api_url", str),
    "ALLISA_API_KEY": ("allisa", "api_key", str),
    "ALLISA_BASE_URL": ("allisa", "base_url", str),
    "ALLISA_CASE_TYPE": ("allisa", "case_type", str),
    "ALLISA_POST_TYPE": ("allisa", "post_type", str),
    "ALLISA_POST_FIELD_MAPPING": ("allisa", "post_field_mapping", str),
    "TAG_UPSERT_PATH": ("tags", "upsert_path", str),
    "TAG_UPSERT_BATCH_SIZE": ("tags", "batch_size", int),
    "TAG_SYNC_ENABLED": ("tags", "enabled", bool),
    "TIMEZONE": ("mapping", "timezone", str),
    "ADD_SUMMARY_TO_NARRATIVE": ("mapping", "add_summary_to_narrative", bool),
    "SYNC_INTERVAL_SECONDS": ("sync", "interval_seconds", int),
    "SYNC_BATCH_SIZE": ("sync", "batch_size", int),
    "SYNC_MAX_RETRIES": ("sync", "max_retries", int),
    "SYNC_MAX_DELIVERY_ATTEMPTS": ("sync", "max_delivery_attempts", int),
    "SYNC_WORKERS": ("sync", "workers", int),
    "SYNC_CYCLE_TIMEOUT_SECONDS": ("sync", "cycle_timeout_seconds", int),
    "REQUEST_TIMEOUT_SECONDS": ("sync", "request_timeout_seconds", int),
}


@dataclass
class Config:
    """Main configuration object."""

    connector_id: str = DEFAULT_CONNECTOR_ID
    data_dir: Optional[str] = None
    wisetime: WiseTimeSettings = field(default_factory=WiseTimeSettings)
    allisa: AllisaSettings = field(default_factory=AllisaSettings)
    sync: SyncSettings = field(default_factory=SyncSettings)
    tags: TagSyncSettings = field(default_factory=TagSyncSettings)
    mapping: MappingSettings = field(default_factory=MappingSettings)
    debug_mode: bool = False

    @classmethod
    def get_config_dir(cls) -> Path:
        """Get the configuration directory path."""
        return Path(user_config_dir(APP_NAME, APP_AUTHOR))

    @classmethod
    def get_data_dir(cls) -> Path:
        """Get the data directory path (for the SQLite state store)."""
        return Path(user_data_dir(APP_NAME, APP_AUTHOR))

    @classmethod
    def get_log_dir(cls) -> Path:
        """Get the log directory path."""
        return Path(user_log_dir(APP_NAME, APP_AUTHOR))

    @classmethod
    def get_config_file(cls) -> Path:
        """Get the config file path."""
        return cls.get_config_dir() / "config.json"

    @property
    def state_dir(self) -> Path:
        return Path(self.data_dir) if self.data_dir else self.get_data_dir()

    @property
    def state_db_path(self) -> Path:
        return self.state_dir / f"{self.connector_id}.db"

    @property
    def field_mapping(self) -> dict[str, str]:
        return parse_field_mapping(self.allisa.post_field_mapping)

    @classmethod
    def load(
        cls,
        path: Optional[Path] = None,
        env: Optional[Mapping[str, str]] = None,
        keychain=None,
    ) -> "Config":
        """Load config: defaults, then the JSON file, then environment variables.

        API keys still missing afterwards are looked up in the keychain.

        Args:
            path: Config file (defaults to the platform config dir)
            env: Environment mapping (defaults to os.environ)
            keychain: Optional KeychainManager for API key fallback

        Raises:
            ConfigError: Config file unreadable or an env value has the wrong type
        """
        config_file = Path(path) if path else cls.get_config_file()
        config = cls()
        if config_file.exists():
            try:
                with open(config_file, "r") as f:
                    data = json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                raise ConfigError(f"Failed to load config {config_file}: {e}") from e
            config = cls._from_dict(data)
            logger.debug(f"Loaded config from {config_file}")

        config.apply_env(os.environ if env is None else env)

        if keychain is not None:
            config._fill_keys_from_keychain(keychain)
        return config

    @classmethod
    def _from_dict(cls, data: dict) -> "Config":
        """Create Config from dictionary."""
        data = dict(data)
        sections = {
            "wisetime": WiseTimeSettings,
            "allisa": AllisaSettings,
            "sync": SyncSettings,
            "tags": TagSyncSettings,
            "mapping": MappingSettings,
        }
        kwargs = {}
        for name, settings_cls in sections.items():
            section = data.pop(name, None) or {}
            try:
                kwargs[name] = settings_cls(
                    **{k: v for k, v in section.items() if k in settings_cls.__dataclass_fields__}
                )
            except TypeError as e:
                raise ConfigError(f"Invalid '{name}' section: {e}") from e

        return cls(
            **kwargs,
            **{k: v for k, v in data.items() if k in cls.__dataclass_fields__},
        )

    def apply_env(self, env: Mapping[str, str]) -> None:
        """Override settings from environment variables."""
        for key, (section, attr, kind) in ENV_KEYS.items():
            raw = env.get(key)
            if raw is None or raw == "":
                continue
            if kind is bool:
                value = raw.strip().lower() in _TRUE_VALUES
            elif kind is int:
                try:
                    value = int(raw)
                except ValueError:
                    raise ConfigError(f"{key} must be an integer, got {raw!r}")
            else:
                value = raw
            target = getattr(self, section) if section else self
            setattr(target, attr, value)

        level = env.get("LOG_LEVEL")
        if level:
            self.debug_mode = level.strip().upper() == "DEBUG"

    def _fill_keys_from_keychain(self, keychain) -> None:
        from .auth.keychain import ALLISA_API_KEY, WISETIME_API_KEY

        if not self.wisetime.api_key:
            self.wisetime.api_key = keychain.load(WISETIME_API_KEY)
        if not self.allisa.api_key:
            self.allisa.api_key = keychain.load(ALLISA_API_KEY)

    def validate(self) -> None:
        """Fail fast on missing or invalid settings.

        Raises:
            ConfigError: Listing every problem found
        """
        problems: list[str] = []

        required = {
            "API_KEY": self.wisetime.api_key,
            "WISETIME_API_URL": self.wisetime.api_url,
            "ALLISA_API_KEY": self.allisa.api_key,
            "ALLISA_BASE_URL": self.allisa.base_url,
            "ALLISA_CASE_TYPE": self.allisa.case_type,
            "ALLISA_POST_TYPE": self.allisa.post_type,
            "CONNECTOR_ID": self.connector_id,
        }
        for name, value in required.items():
            if not value:
                problems.append(f"{name} needs to be set")

        try:
            parse_field_mapping(self.allisa.post_field_mapping)
        except ConfigError as e:
            problems.append(str(e))

        try:
            ZoneInfo(self.mapping.timezone)
        except (ZoneInfoNotFoundError, ValueError):
            problems.append(f"Unknown TIMEZONE: {self.mapping.timezone}")

        if not 1 <= self.sync.batch_size <= MAX_BATCH_SIZE:
            problems.append(f"Sync batch size must be between 1 and {MAX_BATCH_SIZE}")
        if self.sync.interval_seconds < 1:
            problems.append("Sync interval must be at least 1 second")
        if self.sync.workers < 1:
            problems.append("Sync workers must be at least 1")
        if self.sync.max_retries < 0:
            problems.append("Sync max retries cannot be negative")
        if self.sync.max_delivery_attempts < 1:
            problems.append("Max delivery attempts must be at least 1")
        if self.sync.cycle_timeout_seconds < 1:
            problems.append("Cycle timeout must be at least 1 second")
        if self.sync.request_timeout_seconds < 1:
            problems.append("Request timeout must be at least 1 second")
        if self.tags.batch_size < 1:
            problems.append("TAG_UPSERT_BATCH_SIZE must be at least 1")

        if problems:
            raise ConfigError("Invalid configuration: " + "; ".join(problems))

    def save(self, path: Optional[Path] = None) -> None:
        """Save config to file. API keys are never written."""
        config_file = Path(path) if path else self.get_config_file()
        config_file.parent.mkdir(parents=True, exist_ok=True)

        data = asdict(self)
        data["wisetime"].pop("api_key", None)
        data["allisa"].pop("api_key", None)
        with open(config_file, "w") as f:
            json.dump(data, f, indent=2)
        logger.info(f"Config saved to {config_file}")


def setup_logging(debug: bool = False, log_dir: Optional[Path] = None) -> None:
    """Configure logging."""
    log_dir = log_dir or Config.get_log_dir()
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "wisetime-allisa-connector.log"

    level = logging.DEBUG if debug else logging.INFO
    format_str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    logging.basicConfig(
        level=level,
        format=format_str,
        handlers=[
            logging.FileHandler(log_file),
            logging.StreamHandler(),
        ],
    )

    # Reduce noise from libraries
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("requests").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)
