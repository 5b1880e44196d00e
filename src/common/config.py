"""
DevStack configuration.

Settings live in ``~/.config/devstack/config.json``; everything has a default
so a missing file is not an error. ``DEVSTACK_HOME`` overrides the data
directory, which holds installed apps, the registry database and logs.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field, fields, asdict
from pathlib import Path
from typing import Any, Dict, Optional

from .exceptions import InvalidConfigError

logger = logging.getLogger(__name__)

CONFIG_PATH = Path.home() / ".config/devstack/config.json"
DEFAULT_DATA_DIR = Path.home() / ".local/share/devstack"

MANIFEST_URL = "https://archive.org/download/dev-env/dev-env_files.xml"
ARCHIVE_BASE_URL = "https://archive.org/download/dev-env/"


def _default_data_dir() -> Path:
    env = os.environ.get("DEVSTACK_HOME")
    return Path(env).expanduser() if env else DEFAULT_DATA_DIR


@dataclass
class DevStackConfig:
    """
    Runtime configuration.

    Attributes:
        data_dir: Root for apps, database, catalog, logs, htdocs and sites
        manifest_url: Remote XML manifest listing downloadable archives
        archive_base_url: Prefix joined with manifest-relative paths
        seven_zip_path: Explicit 7-Zip binary; looked up on PATH when unset
        refresh_timeout: Seconds allowed for the manifest request
        download_timeout: Overall deadline for one archive download (seconds)
        connect_timeout: Socket connect timeout for downloads (seconds)
        read_timeout: Socket read timeout between chunks (seconds)
        verify_checksums: Verify sha1/md5 from the catalog after download
        log_buffer_size: Lines kept per service in the ring buffer
        start_grace_period: Seconds to wait before declaring a start successful
        stop_timeout: Seconds to wait for a vendor stop command
        kill_timeout: Seconds to wait for terminated processes before killing
        restart_delay: Pause between stop and start on restart
        autostart_delay: Pause before boot recovery begins
        autostart_stagger: Pause between consecutive auto-starts
    """
    data_dir: Path = field(default_factory=_default_data_dir)
    manifest_url: str = MANIFEST_URL
    archive_base_url: str = ARCHIVE_BASE_URL
    seven_zip_path: Optional[str] = None
    refresh_timeout: float = 15.0
    download_timeout: float = 1800.0
    connect_timeout: float = 15.0
    read_timeout: float = 60.0
    verify_checksums: bool = True
    log_buffer_size: int = 100
    start_grace_period: float = 1.0
    stop_timeout: float = 5.0
    kill_timeout: float = 3.0
    restart_delay: float = 1.0
    autostart_delay: float = 1.0
    autostart_stagger: float = 1.0

    def __post_init__(self):
        self.data_dir = Path(self.data_dir).expanduser()
        self.validate()

    def validate(self) -> None:
        """Raise InvalidConfigError for values that cannot work."""
        for name in (
            "refresh_timeout", "download_timeout", "connect_timeout",
            "read_timeout", "stop_timeout", "kill_timeout",
        ):
            value = getattr(self, name)
            if not isinstance(value, (int, float)) or value <= 0:
                raise InvalidConfigError(name, value, "must be a positive number")

        for name in ("start_grace_period", "restart_delay", "autostart_delay", "autostart_stagger"):
            value = getattr(self, name)
            if not isinstance(value, (int, float)) or value < 0:
                raise InvalidConfigError(name, value, "must not be negative")

        if not isinstance(self.log_buffer_size, int) or self.log_buffer_size < 1:
            raise InvalidConfigError("log_buffer_size", self.log_buffer_size, "must be at least 1")

    # Derived locations

    @property
    def apps_dir(self) -> Path:
        return self.data_dir / "apps"

    @property
    def catalog_path(self) -> Path:
        return self.data_dir / "data" / "apps.json"

    @property
    def db_path(self) -> Path:
        return self.data_dir / "dev-env.db"

    @property
    def logs_dir(self) -> Path:
        return self.data_dir / "logs"

    @property
    def htdocs_dir(self) -> Path:
        return self.data_dir / "htdocs"

    @property
    def sites_dir(self) -> Path:
        return self.data_dir / "sites"

    @property
    def static_dir(self) -> Path:
        return self.data_dir / "static"

    def ensure_dirs(self) -> None:
        for path in (self.data_dir, self.apps_dir, self.catalog_path.parent, self.logs_dir):
            path.mkdir(parents=True, exist_ok=True)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["data_dir"] = str(self.data_dir)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DevStackConfig":
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            logger.warning(f"Ignoring unknown config keys: {', '.join(sorted(unknown))}")
        return cls(**{k: v for k, v in data.items() if k in known})

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "DevStackConfig":
        """
        Load configuration from disk.

        Args:
            path: Config file (default: ~/.config/devstack/config.json)

        Returns:
            Loaded config, or defaults when the file does not exist.

        Raises:
            InvalidConfigError: If the file is not valid JSON or has bad values.
        """
        path = path or CONFIG_PATH
        if not path.exists():
            logger.debug(f"No config at {path}, using defaults")
            return cls()

        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise InvalidConfigError("config_file", str(path), str(e))

        if not isinstance(data, dict):
            raise InvalidConfigError("config_file", str(path), "top level must be an object")

        return cls.from_dict(data)

    def save(self, path: Optional[Path] = None) -> None:
        from utils.fs_ops import atomic_write_json

        atomic_write_json(path or CONFIG_PATH, self.to_dict())
