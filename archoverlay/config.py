"""
Configuration management for overlay stores.

The configuration is stored as a TOML file in the store directory.
It controls persistence, import defaults and coverage reporting.
"""

import os
import tomllib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import tomli_w


CONFIG_FILENAME = "archoverlay.toml"
CONFIG_VERSION = 1

IMPORT_STRATEGIES = ("merge", "replace")
BLANK_MODES = ("ignore", "clear")


def get_store_path(override: Optional[Path] = None) -> Path:
    """Resolve the store directory: explicit path, then env var, then ~/.archoverlay."""
    if override is not None:
        return Path(override).expanduser()
    env = os.environ.get("ARCHOVERLAY_STORE_PATH")
    if env:
        return Path(env).expanduser()
    return Path.home() / ".archoverlay"


@dataclass
class OverlayConfig:
    """Complete store configuration."""
    path: Path
    version: int = CONFIG_VERSION
    created: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    # [persistence]
    debounce_seconds: float = 0.5
    db_filename: str = "overlay.db"

    # [import]
    import_strategy: str = "merge"
    warn_on_signature_mismatch: bool = True

    # [survey]
    blank_mode: str = "ignore"

    # [coverage]
    required_tags: list[str] = field(default_factory=list)

    @property
    def config_path(self) -> Path:
        """Path to the TOML config file."""
        return self.path / CONFIG_FILENAME

    @property
    def db_path(self) -> Path:
        return self.path / self.db_filename

    def exists(self) -> bool:
        """Check if config file exists."""
        return self.config_path.exists()


def load_config(store_path: Path) -> OverlayConfig:
    """
    Load configuration from a store directory.

    Raises:
        FileNotFoundError: If config doesn't exist
        ValueError: If config is invalid
    """
    config_path = store_path / CONFIG_FILENAME

    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    with open(config_path, "rb") as f:
        data = tomllib.load(f)

    version = data.get("store", {}).get("version", 1)
    if version > CONFIG_VERSION:
        raise ValueError(f"Config version {version} is newer than supported ({CONFIG_VERSION})")

    persistence = data.get("persistence", {})
    import_ = data.get("import", {})
    survey = data.get("survey", {})
    coverage = data.get("coverage", {})

    strategy = import_.get("strategy", "merge")
    if strategy not in IMPORT_STRATEGIES:
        raise ValueError(f"Invalid import strategy in config: {strategy!r}")
    blank_mode = survey.get("blank_mode", "ignore")
    if blank_mode not in BLANK_MODES:
        raise ValueError(f"Invalid survey blank_mode in config: {blank_mode!r}")

    return OverlayConfig(
        path=store_path,
        version=version,
        created=data.get("store", {}).get("created", ""),
        debounce_seconds=float(persistence.get("debounce_seconds", 0.5)),
        db_filename=persistence.get("db_filename", "overlay.db"),
        import_strategy=strategy,
        warn_on_signature_mismatch=bool(import_.get("warn_on_signature_mismatch", True)),
        blank_mode=blank_mode,
        required_tags=[str(k) for k in coverage.get("required_tags", [])],
    )


def save_config(config: OverlayConfig) -> None:
    """
    Save configuration to the store directory.

    Creates the directory if it doesn't exist.
    """
    config.path.mkdir(parents=True, exist_ok=True)

    data = {
        "store": {
            "version": config.version,
            "created": config.created,
        },
        "persistence": {
            "debounce_seconds": config.debounce_seconds,
            "db_filename": config.db_filename,
        },
        "import": {
            "strategy": config.import_strategy,
            "warn_on_signature_mismatch": config.warn_on_signature_mismatch,
        },
        "survey": {
            "blank_mode": config.blank_mode,
        },
        "coverage": {
            "required_tags": list(config.required_tags),
        },
    }

    with open(config.config_path, "wb") as f:
        tomli_w.dump(data, f)


def load_or_create_config(store_path: Path) -> OverlayConfig:
    """
    Load existing config or create a new one with defaults.

    This is the main entry point for config management.
    """
    config_path = store_path / CONFIG_FILENAME

    if config_path.exists():
        return load_config(store_path)
    config = OverlayConfig(path=store_path)
    save_config(config)
    return config
