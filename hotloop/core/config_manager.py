import json
import logging
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from .errors import ConfigError

PROTOCOL_VERSION = 1
DEFAULT_DEBOUNCE_MS = 150
DEFAULT_WS_PORT = 9876

logger = logging.getLogger(__name__)

_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
_INT_FIELDS = (
    "debounce_ms", "ws_port", "heartbeat_interval_ms", "heartbeat_timeout_ms", "ack_timeout_ms",
    "protocol_version", "max_clients", "state_history", "bus_queue_size",
)


@dataclass(frozen=True)
class HotReloadConfig:
    watch_roots: Tuple[Path, ...]
    debounce_ms: int = DEFAULT_DEBOUNCE_MS
    ws_host: str = "127.0.0.1"
    ws_port: int = DEFAULT_WS_PORT
    heartbeat_interval_ms: int = 30_000
    heartbeat_timeout_ms: int = 10_000
    ack_timeout_ms: int = 5_000
    state_preservation: bool = True
    state_history: int = 10
    protocol_version: int = PROTOCOL_VERSION
    max_clients: int = 10
    extensions: Tuple[str, ...] = ("oui",)  # empty = every file
    ignore_dirs: Tuple[str, ...] = ("target", "node_modules", ".git", ".oxide", "__pycache__")
    bus_queue_size: int = 256
    bus_overflow: str = "drop_oldest"  # or "backpressure"
    slow_compile_ms: int = 2_000
    log_level: str = "INFO"

    def __post_init__(self):
        self._check_types()
        # Accept lists/strings from JSON or callers, store immutable tuples
        roots = self.watch_roots
        if isinstance(roots, (str, Path)):
            roots = (roots,)
        object.__setattr__(self, "watch_roots", tuple(Path(r) for r in roots or ()))
        object.__setattr__(self, "extensions", tuple(e.lstrip(".") for e in self.extensions))
        object.__setattr__(self, "ignore_dirs", tuple(self.ignore_dirs))
        object.__setattr__(self, "log_level", self.log_level.upper())
        self._validate()

    def _check_types(self):
        for key in _INT_FIELDS:
            value = getattr(self, key)
            # bool is an int subclass but never a valid count
            if not isinstance(value, int) or isinstance(value, bool):
                raise ConfigError(f"{key} must be an integer, got {value!r}")
        if not isinstance(self.slow_compile_ms, (int, float)) or isinstance(self.slow_compile_ms, bool):
            raise ConfigError(f"slow_compile_ms must be a number, got {self.slow_compile_ms!r}")
        if not isinstance(self.state_preservation, bool):
            raise ConfigError(f"state_preservation must be true or false, got {self.state_preservation!r}")
        for key in ("ws_host", "bus_overflow", "log_level"):
            if not isinstance(getattr(self, key), str):
                raise ConfigError(f"{key} must be a string, got {getattr(self, key)!r}")
        roots = self.watch_roots
        if not isinstance(roots, (str, Path)):
            if not isinstance(roots, (list, tuple)) or not all(isinstance(r, (str, Path)) for r in roots):
                raise ConfigError(f"watch_roots must be a path or a list of paths, got {roots!r}")
        for key in ("extensions", "ignore_dirs"):
            value = getattr(self, key)
            if not isinstance(value, (list, tuple)) or not all(isinstance(v, str) for v in value):
                raise ConfigError(f"{key} must be a list of strings, got {value!r}")

    def _validate(self):
        if not self.watch_roots:
            raise ConfigError("watch_roots must name at least one path")
        if self.debounce_ms < 0:
            raise ConfigError(f"debounce_ms must be >= 0, got {self.debounce_ms}")
        if not 0 <= self.ws_port <= 65535:
            raise ConfigError(f"ws_port out of range: {self.ws_port}")
        for key in ("heartbeat_interval_ms", "heartbeat_timeout_ms", "ack_timeout_ms",
                    "max_clients", "bus_queue_size", "state_history"):
            if getattr(self, key) <= 0:
                raise ConfigError(f"{key} must be positive")
        if self.bus_overflow not in ("drop_oldest", "backpressure"):
            raise ConfigError(f"Unknown bus_overflow policy: {self.bus_overflow}")
        if self.log_level not in _LOG_LEVELS:
            raise ConfigError(f"Unknown log_level: {self.log_level}")

    @property
    def debounce_seconds(self) -> float:
        return self.debounce_ms / 1000

    def to_dict(self) -> Dict[str, Any]:
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        data["watch_roots"] = [str(p) for p in self.watch_roots]
        data["extensions"] = list(self.extensions)
        data["ignore_dirs"] = list(self.ignore_dirs)
        return data


class ConfigManager:
    def __init__(self, config_path: str = "hotloop.json", defaults: Optional[Dict[str, Any]] = None):
        self.config_path = Path(config_path)
        self._defaults = defaults or {"watch_roots": ["src"]}
        self.config = self._load_config()

    def _load_config(self) -> HotReloadConfig:
        """Load configuration from file or create default"""
        values = dict(self._defaults)
        if self.config_path.exists():
            with open(self.config_path) as f:
                try:
                    values.update(json.load(f))
                except json.JSONDecodeError as e:
                    raise ConfigError(f"Invalid config file {self.config_path}: {e}") from e
            logger.debug(f"Loaded config from {self.config_path}")
        unknown = set(values) - {f.name for f in fields(HotReloadConfig)}
        if unknown:
            raise ConfigError(f"Unknown configuration keys: {', '.join(sorted(unknown))}")
        return HotReloadConfig(**values)

    def save_config(self):
        """Save current configuration to file"""
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.config_path, 'w') as f:
            json.dump(self.config.to_dict(), f, indent=2)

    def get(self, key: str) -> Any:
        """Get configuration value"""
        return getattr(self.config, key)

    def update(self, key: str, value: Any):
        """Update configuration value"""
        if key not in {f.name for f in fields(HotReloadConfig)}:
            raise KeyError(f"Unknown configuration key: {key}")
        self.config = replace(self.config, **{key: value})
        self.save_config()
