"""
Configuration management with TOML + environment variable support.

Resolution order for a key (first hit wins):
1. Runtime overrides (command-line flags, ConfigManager.set)
2. Environment variables: ledger.rpc_url -> CROUPIER_LEDGER_RPC_URL
3. The TOML file
4. The default passed by the caller

Wei amounts do not fit TOML integers, so they are stored as strings and read
with get_wei().
"""
import os
import tomllib
from pathlib import Path
from typing import Any, Callable, Optional, TypeVar

from croupier.core.errors import ConfigurationError

DEFAULT_SEARCH_PATHS = (
    Path("config/default.toml"),
    Path("croupier.toml"),
    Path("/etc/croupier/croupier.toml"),
)

_TRUE = ("true", "1", "yes", "on")
_FALSE = ("false", "0", "no", "off")

T = TypeVar("T")


class ConfigManager:
    """Layered configuration lookup.

    Usage:
        config = ConfigManager(Path("config/default.toml"))
        rpc_url = config.require("ledger.rpc_url")
        gate = config.get_int("executor.minimum_delay_seconds", 60)
    """

    def __init__(
        self,
        config_path: Optional[Path] = None,
        env_prefix: str = "CROUPIER_",
        overrides: Optional[dict[str, Any]] = None,
    ) -> None:
        """Initialize ConfigManager.

        Args:
            config_path: TOML file to load; a missing file means "defaults only"
            env_prefix: Prefix for environment variable overrides
            overrides: Flat dot-notation values that win over everything else

        Raises:
            ConfigurationError: if the file exists but is not valid TOML.
        """
        self._data: dict[str, Any] = {}
        self._env_prefix = env_prefix
        self._config_path = config_path
        self._overrides: dict[str, Any] = dict(overrides or {})
        self.reload()

    @property
    def path(self) -> Optional[Path]:
        return self._config_path

    def reload(self) -> None:
        """Re-read the TOML file."""
        if not self._config_path or not self._config_path.exists():
            return
        try:
            with open(self._config_path, "rb") as f:
                self._data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigurationError(f"Invalid TOML in {self._config_path}: {e}") from e

    def _env_key(self, key: str) -> str:
        return self._env_prefix + key.upper().replace(".", "_")

    def _parse_env_value(self, value: str) -> Any:
        lowered = value.lower()
        if lowered in ("true", "yes", "on"):
            return True
        if lowered in ("false", "no", "off"):
            return False
        # Keys and addresses stay strings
        if lowered.startswith("0x"):
            return value
        try:
            return float(value) if "." in value else int(value)
        except ValueError:
            pass
        if "," in value:
            return [v.strip() for v in value.split(",")]
        return value

    def _lookup(self, key: str) -> tuple[bool, Any]:
        if key in self._overrides:
            return True, self._overrides[key]

        env_key = self._env_key(key)
        if env_key in os.environ:
            return True, self._parse_env_value(os.environ[env_key])

        current: Any = self._data
        for part in key.split("."):
            if not isinstance(current, dict) or part not in current:
                return False, None
            current = current[part]
        return True, current

    def set(self, key: str, value: Any) -> None:
        """Override a value at runtime (highest priority)."""
        self._overrides[key] = value

    def get(self, key: str, default: Any = None) -> Any:
        found, value = self._lookup(key)
        return value if found else default

    def require(self, key: str) -> Any:
        """Get a value that must be present and non-empty.

        Raises:
            ConfigurationError: naming the key and its environment variable.
        """
        value = self.get(key)
        if value is None or value == "":
            raise ConfigurationError(f"{key} is required (set it in the config file or {self._env_key(key)})")
        return value

    def get_section(self, section: str) -> dict[str, Any]:
        """Whole TOML table at ``section`` (environment overrides not applied)."""
        found, value = self._lookup(section)
        if found and isinstance(value, dict):
            return value
        return {}

    def _typed(self, key: str, default: T, convert: Callable[[Any], T], type_name: str) -> T:
        value = self.get(key)
        if value is None:
            return default
        try:
            return convert(value)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"{key} must be {type_name}, got {value!r}") from e

    def get_int(self, key: str, default: int = 0) -> int:
        return self._typed(key, default, int, "an integer")

    def get_float(self, key: str, default: float = 0.0) -> float:
        return self._typed(key, default, float, "a number")

    def get_wei(self, key: str, default: int = 0) -> int:
        """Integer amount that may be stored as a string (``"10000000000000000000000"``)."""

        def convert(value: Any) -> int:
            if isinstance(value, bool) or isinstance(value, float):
                raise ValueError("wei amounts must be integers")
            amount = int(str(value).replace("_", ""))
            if amount < 0:
                raise ValueError("wei amounts must not be negative")
            return amount

        return self._typed(key, default, convert, "a non-negative integer amount")

    def get_bool(self, key: str, default: bool = False) -> bool:
        def convert(value: Any) -> bool:
            if isinstance(value, bool):
                return value
            if isinstance(value, str):
                if value.lower() in _TRUE:
                    return True
                if value.lower() in _FALSE:
                    return False
                raise ValueError(value)
            return bool(value)

        return self._typed(key, default, convert, "a boolean")

    def get_list(self, key: str, default: Optional[list[Any]] = None) -> list[Any]:
        value = self.get(key)
        if value is None:
            return [] if default is None else default
        if isinstance(value, list):
            return value
        if isinstance(value, str):
            return [v.strip() for v in value.split(",") if v.strip()]
        return [value]

    @property
    def raw_data(self) -> dict[str, Any]:
        """Parsed TOML file contents (for debugging)."""
        return self._data.copy()


def find_config_file(specified: Optional[Path] = None) -> Optional[Path]:
    """Find the configuration file to load.

    An explicitly specified path wins; otherwise the first existing entry of
    the default search paths is used.
    """
    if specified is not None:
        return specified if specified.exists() else None

    for path in DEFAULT_SEARCH_PATHS:
        if path.exists():
            return path

    return None
