"""Configuration loader for linkscrub.

This module loads the YAML configuration file holding the global engine
toggles and the remote rule sources, and resolves the directories used for
persistent state.
"""

import re
from pathlib import Path
from typing import Any

import yaml

from linkscrub.core.constants import DEFAULTS, RuleGroup
from linkscrub.core.exceptions import ConfigError
from linkscrub.core.models import AppConfig, EngineSettings, RemoteSource


_SHA256_RE = re.compile(r"^[a-fA-F0-9]{64}$")

_BOOL_SETTINGS = ("enabled", "referral_marketing", "domain_blocking", "skip_local_hosts", "statistics")


# ============================================================================
# Paths
# ============================================================================

def get_config_dir() -> Path:
    """Get the configuration directory path.

    Returns:
        Path to configs directory (./configs relative to project root)
    """
    # core/ -> linkscrub/ -> src/ -> root
    project_root = Path(__file__).parent.parent.parent.parent
    return project_root / "configs"


def get_data_dir() -> Path:
    """Directory holding custom rules, exclusions, whitelist and caches."""
    return Path.home() / ".local" / "share" / "linkscrub"


# ============================================================================
# Loaders
# ============================================================================

def _read_yaml(config_path: Path) -> dict[str, Any]:
    if not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}")

    try:
        with config_path.open("r") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse config YAML: {e}") from e
    except OSError as e:
        raise ConfigError(f"Failed to read config file: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError("Config file must contain a mapping")
    return data


def parse_settings(data: dict[str, Any]) -> EngineSettings:
    """Build EngineSettings from the ``engine`` section of the config.

    Raises:
        ConfigError: If a value has the wrong type or is out of range
    """
    if not isinstance(data, dict):
        raise ConfigError("'engine' section must be a mapping")

    values: dict[str, Any] = {}
    for name in _BOOL_SETTINGS:
        if name in data:
            if not isinstance(data[name], bool):
                raise ConfigError(f"'engine.{name}' must be true or false")
            values[name] = data[name]

    if "max_passes" in data:
        max_passes = data["max_passes"]
        if not isinstance(max_passes, int) or isinstance(max_passes, bool) or max_passes < 1:
            raise ConfigError("'engine.max_passes' must be a positive integer")
        values["max_passes"] = max_passes

    if "rule_group_order" in data:
        order = data["rule_group_order"]
        if not isinstance(order, list):
            raise ConfigError("'engine.rule_group_order' must be a list")
        try:
            groups = tuple(RuleGroup(str(item)) for item in order)
        except ValueError as e:
            valid = ", ".join(g.value for g in RuleGroup)
            raise ConfigError(f"Invalid rule group in 'engine.rule_group_order' (valid: {valid})") from e
        values["rule_group_order"] = groups

    try:
        return EngineSettings(**values)
    except ValueError as e:
        raise ConfigError(f"Invalid engine settings: {e}") from e


def parse_remote_sources(data: Any) -> list[RemoteSource]:
    """Parse the ``remote_sources`` list.

    Raises:
        ConfigError: If an entry is malformed, not https, or has no hash
    """
    if data is None:
        return []
    if not isinstance(data, list):
        raise ConfigError("'remote_sources' must be a list")

    sources: list[RemoteSource] = []
    names: set[str] = set()
    for index, entry in enumerate(data):
        if not isinstance(entry, dict):
            raise ConfigError(f"Remote source #{index} must be a mapping")

        for field in ("name", "url"):
            if field not in entry:
                raise ConfigError(f"Missing required field '{field}' in remote source #{index}")

        name = str(entry["name"])
        if name in names:
            raise ConfigError(f"Duplicate remote source name '{name}'")
        names.add(name)

        url = str(entry["url"])
        hash_url = entry.get("hash_url")
        sha256 = entry.get("sha256")

        for value in (url, hash_url):
            if value is not None and not str(value).lower().startswith("https://"):
                raise ConfigError(f"Remote source '{name}' must use https: {value}")

        if hash_url is None and sha256 is None:
            raise ConfigError(f"Remote source '{name}' needs 'hash_url' or 'sha256'")
        if sha256 is not None and not _SHA256_RE.match(str(sha256)):
            raise ConfigError(f"Remote source '{name}' has an invalid 'sha256'")

        sources.append(RemoteSource(
            name=name,
            url=url,
            hash_url=str(hash_url) if hash_url is not None else None,
            sha256=str(sha256).lower() if sha256 is not None else None,
        ))

    return sources


def load_config(config_file: Path | str | None = None) -> AppConfig:
    """Load the application configuration.

    Args:
        config_file: Path to the YAML file. If None, defaults are returned.

    Returns:
        AppConfig with validated settings

    Raises:
        ConfigError: If file not found, YAML parsing fails or a value is invalid
    """
    if config_file is None:
        return AppConfig(data_dir=get_data_dir())

    data = _read_yaml(Path(config_file))

    fetch_timeout = data.get("fetch_timeout", DEFAULTS["fetch_timeout"])
    if not isinstance(fetch_timeout, (int, float)) or isinstance(fetch_timeout, bool) or fetch_timeout <= 0:
        raise ConfigError("'fetch_timeout' must be a positive number")

    data_dir = data.get("data_dir")
    statistics_log = data.get("statistics_log")

    return AppConfig(
        settings=parse_settings(data.get("engine") or {}),
        remote_sources=parse_remote_sources(data.get("remote_sources")),
        fetch_timeout=float(fetch_timeout),
        data_dir=Path(data_dir).expanduser() if data_dir else get_data_dir(),
        statistics_log=Path(statistics_log).expanduser() if statistics_log else None,
    )


def load_settings(config_file: Path | str | None = None) -> EngineSettings:
    """Load only the engine settings."""
    return load_config(config_file).settings
