# ============================================================================
# HSSE Live - Session Liveness Configuration
# ============================================================================
# Defaults table with type casting, overridable via HSSE_* environment vars.
# ============================================================================

import logging
import os
from dataclasses import dataclass
from typing import Any, Callable, Dict, FrozenSet, Optional

logger = logging.getLogger(__name__)

# key: (default, value_type, category)
DEFAULT_CONFIG = {
    # Idle timeout
    "idle_timeout_ms": (900_000, "int", "session"),
    "warning_threshold_ms": (120_000, "int", "session"),
    "idle_enabled": (True, "bool", "session"),

    # Realtime
    "alert_severities": ("critical,high", "set", "realtime"),

    # Housekeeping
    "sweep_seconds": (60, "int", "scheduler"),
    "db_path": ("hsse.db", "string", "storage"),
    "secret_key": ("hsse-live-secret-key", "string", "web"),
}


def _cast_value(value: Optional[str], value_type: str) -> Any:
    """Cast string value to appropriate type."""
    if value is None:
        return None
    if value_type == "bool":
        return value.strip().lower() in ("true", "1", "yes", "on")
    if value_type == "int":
        try:
            return int(value)
        except ValueError:
            logger.warning(f"[Config] Not an integer: {value!r}")
            return None
    if value_type == "set":
        return frozenset(v.strip().lower() for v in value.split(",") if v.strip())
    return value


def get_setting(key: str) -> Any:
    """Read a setting: HSSE_<KEY> environment variable first, then the default."""
    default, value_type, _category = DEFAULT_CONFIG[key]
    raw = os.environ.get(f"HSSE_{key.upper()}")
    if raw is not None:
        value = _cast_value(raw, value_type)
        if value is not None:
            return value
    if value_type == "set" and isinstance(default, str):
        return _cast_value(default, value_type)
    return default


def get_all_settings() -> Dict[str, Any]:
    """Resolved settings grouped by category (secrets omitted)."""
    grouped: Dict[str, Dict[str, Any]] = {}
    for key, (_default, _vtype, category) in DEFAULT_CONFIG.items():
        if key == "secret_key":
            continue
        value = get_setting(key)
        if isinstance(value, frozenset):
            value = sorted(value)
        grouped.setdefault(category, {})[key] = value
    return grouped


@dataclass
class IdleTimeoutConfig:
    """
    Idle-timeout options for one session.

    The warning phase starts ``idle_timeout_ms - warning_threshold_ms`` after
    the last activity. A threshold at or above the timeout is clamped to the
    timeout, so the warning begins immediately after each reset.
    """
    idle_timeout_ms: int = 900_000
    warning_threshold_ms: int = 120_000
    on_timeout: Optional[Callable[[], None]] = None
    enabled: bool = True

    def __post_init__(self):
        if self.idle_timeout_ms <= 0:
            raise ValueError(f"idle_timeout_ms must be positive, got {self.idle_timeout_ms}")
        if self.warning_threshold_ms < 0:
            raise ValueError(f"warning_threshold_ms must be >= 0, got {self.warning_threshold_ms}")
        if self.warning_threshold_ms >= self.idle_timeout_ms:
            logger.warning(
                f"[Session] warning_threshold_ms={self.warning_threshold_ms} >= "
                f"idle_timeout_ms={self.idle_timeout_ms}; clamping warning to the full timeout"
            )
            self.warning_threshold_ms = self.idle_timeout_ms

    @property
    def warning_offset_ms(self) -> int:
        """Delay from last activity until the warning phase begins."""
        return self.idle_timeout_ms - self.warning_threshold_ms

    @classmethod
    def from_settings(cls, on_timeout: Optional[Callable[[], None]] = None, **overrides) -> "IdleTimeoutConfig":
        """Build from environment/default settings, with explicit overrides winning."""
        values = {
            "idle_timeout_ms": get_setting("idle_timeout_ms"),
            "warning_threshold_ms": get_setting("warning_threshold_ms"),
            "enabled": get_setting("idle_enabled"),
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(on_timeout=on_timeout, **values)

    def to_dict(self) -> Dict:
        return {
            "idle_timeout_ms": self.idle_timeout_ms,
            "warning_threshold_ms": self.warning_threshold_ms,
            "enabled": self.enabled,
        }


@dataclass(frozen=True)
class RealtimeConfig:
    """Severity hints that raise a user-visible alert on insert."""
    alert_severities: FrozenSet[str] = frozenset({"critical", "high"})

    @classmethod
    def from_settings(cls) -> "RealtimeConfig":
        return cls(alert_severities=get_setting("alert_severities"))
