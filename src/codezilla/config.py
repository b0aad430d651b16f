"""Configuration management for Codezilla."""

import logging
import os
import sys
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any

# Use tomllib on Python 3.11+, fall back to tomli for 3.10
if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

import tomli_w

from .activity import ActivityMode, parse_activity_mode

logger = logging.getLogger(__name__)

TRUE_VALUES = ("1", "true", "yes", "on")
FALSE_VALUES = ("0", "false", "no", "off")


@dataclass
class DiscoveryConfig:
    """Claude transcript discovery retries."""

    initial_delay: float = 1.5      # Seconds before the first lookup
    retry_delay: float = 2.0        # Seconds between lookups
    max_attempts: int = 30


@dataclass
class DiagnosticsConfig:
    degraded_min_unparsed: int = 20  # Unparsed lines (with none parsed) before "degraded"


@dataclass
class BadgeConfig:
    """Badge sweep timing."""

    sweep_interval: float = 1.0
    done_confirm: float = 2.0       # Quiet seconds before "responding" settles to done
    badge_ttl: float = 30.0         # Lifetime of done/error badges


@dataclass
class BindingConfig:
    """Codex rollout binding scan."""

    scan_interval: float = 1.0
    max_attempts: int = 120
    candidate_limit: int = 200
    early_skew: float = 30.0        # Accept rollouts modified this long before thread start
    max_depth: int = 4


@dataclass
class WatcherConfig:
    poll_interval: float = 0.5


@dataclass
class Config:
    """Codezilla configuration."""

    transcript_watcher_enabled: bool = field(default=True)
    debug_signals: bool = field(default=False)    # Log every classified line
    debug_logging: bool = field(default=False)    # Enable debug logging to file (opt-in)
    activity_mode: ActivityMode = field(default=ActivityMode.HYBRID)
    discovery: DiscoveryConfig = field(default_factory=DiscoveryConfig)
    diagnostics: DiagnosticsConfig = field(default_factory=DiagnosticsConfig)
    badges: BadgeConfig = field(default_factory=BadgeConfig)
    bindings: BindingConfig = field(default_factory=BindingConfig)
    watcher: WatcherConfig = field(default_factory=WatcherConfig)

    def to_dict(self) -> dict[str, Any]:
        """Plain TOML-serialisable view of the whole configuration."""
        data = asdict(self)
        data["activity_mode"] = self.activity_mode.value
        return data


# Default configuration
DEFAULT_CONFIG = Config()

# Config file path
CONFIG_DIR = Path.home() / ".codezilla"
CONFIG_FILE = CONFIG_DIR / "config.toml"


def parse_bool(raw: str | None, default: bool) -> bool:
    """Parse a boolean flag; unrecognised values keep the default."""
    if raw is None:
        return default
    normalized = raw.strip().lower()
    if normalized in TRUE_VALUES:
        return True
    if normalized in FALSE_VALUES:
        return False
    return default


def _section(data: dict, name: str) -> dict:
    section = data.get(name, {})
    return section if isinstance(section, dict) else {}


def _file_bool(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return parse_bool(value, default)
    return default


def _load_section(data: dict, name: str, default):
    """Overlay one TOML table on a section default; a bad value keeps the whole default."""
    section = _section(data, name)
    values = {}
    try:
        for f in fields(default):
            if f.name in section:
                raw = section[f.name]
                if isinstance(raw, bool):
                    raise ValueError(f"{f.name} must be a number")
                values[f.name] = type(getattr(default, f.name))(raw)
    except (TypeError, ValueError, OverflowError) as e:
        logger.warning(f"Ignoring invalid [{name}] section in {CONFIG_FILE}: {e}")
        return default
    return replace(default, **values)


def _load_file() -> dict | None:
    if not CONFIG_FILE.exists():
        return None
    try:
        with open(CONFIG_FILE, "rb") as f:
            return tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as e:
        logger.warning(f"Ignoring unreadable config file {CONFIG_FILE}: {e}")
        return None


def load_config() -> Config:
    """Load configuration from environment, file, or defaults.

    Priority (highest to lowest):
    1. Environment variables (CODEZILLA_*)
    2. Config file (~/.codezilla/config.toml)
    3. Hardcoded defaults
    """
    transcript_watcher_enabled = DEFAULT_CONFIG.transcript_watcher_enabled
    debug_signals = DEFAULT_CONFIG.debug_signals
    debug_logging = DEFAULT_CONFIG.debug_logging
    activity_mode = DEFAULT_CONFIG.activity_mode

    discovery_config = DiscoveryConfig()
    diagnostics_config = DiagnosticsConfig()
    badge_config = BadgeConfig()
    binding_config = BindingConfig()
    watcher_config = WatcherConfig()

    data = _load_file()
    if data is not None:
        transcript_watcher_enabled = _file_bool(
            data.get("transcript_watcher_enabled"), transcript_watcher_enabled
        )
        debug_signals = _file_bool(data.get("debug_signals"), debug_signals)
        debug_logging = _file_bool(data.get("debug_logging"), debug_logging)
        if "activity_mode" in data:
            activity_mode = parse_activity_mode(str(data["activity_mode"]))

        discovery_config = _load_section(data, "discovery", discovery_config)
        diagnostics_config = _load_section(data, "diagnostics", diagnostics_config)
        badge_config = _load_section(data, "badges", badge_config)
        binding_config = _load_section(data, "bindings", binding_config)
        watcher_config = _load_section(data, "watcher", watcher_config)

    # Environment variables override everything
    transcript_watcher_enabled = parse_bool(
        os.getenv("CODEZILLA_ENABLE_TRANSCRIPT_WATCHER"), transcript_watcher_enabled
    )
    debug_signals = parse_bool(os.getenv("CODEZILLA_DEBUG_TRANSCRIPT_SIGNALS"), debug_signals)
    debug_logging = parse_bool(os.getenv("CODEZILLA_DEBUG_LOGGING"), debug_logging)
    activity_mode_env = os.getenv("CODEZILLA_THREAD_ACTIVITY_MODE")
    if activity_mode_env is not None:
        activity_mode = parse_activity_mode(activity_mode_env)

    return Config(
        transcript_watcher_enabled=transcript_watcher_enabled,
        debug_signals=debug_signals,
        debug_logging=debug_logging,
        activity_mode=activity_mode,
        discovery=discovery_config,
        diagnostics=diagnostics_config,
        badges=badge_config,
        bindings=binding_config,
        watcher=watcher_config,
    )


def save_config(config: Config) -> None:
    """Save configuration to file, writing only sections that differ from defaults."""
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)

    data: dict[str, Any] = {
        "transcript_watcher_enabled": config.transcript_watcher_enabled,
        "debug_signals": config.debug_signals,
        "debug_logging": config.debug_logging,
        "activity_mode": config.activity_mode.value,
    }

    sections = {
        "discovery": (config.discovery, DiscoveryConfig()),
        "diagnostics": (config.diagnostics, DiagnosticsConfig()),
        "badges": (config.badges, BadgeConfig()),
        "bindings": (config.bindings, BindingConfig()),
        "watcher": (config.watcher, WatcherConfig()),
    }
    for name, (value, default) in sections.items():
        if value != default:
            data[name] = asdict(value)

    with open(CONFIG_FILE, "wb") as f:
        tomli_w.dump(data, f)
