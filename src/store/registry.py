"""
Install Registry - Persisted table of installed apps and settings.

One SQLite file in the data directory holds three tables:

- ``installed_apps``: one row per installed app (insert-or-replace on install)
- ``settings``: free-form key/value strings such as ``default_php_version``
- ``sites``: virtual-host domains owned by the web server apps
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from common.exceptions import RegistryUnavailableError

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS settings (
    key TEXT PRIMARY KEY,
    value TEXT
);
CREATE TABLE IF NOT EXISTS installed_apps (
    app_id TEXT PRIMARY KEY,
    installed_version TEXT,
    install_path TEXT,
    exec_path TEXT,
    cli_path TEXT,
    custom_args TEXT,
    auto_start INTEGER DEFAULT 0,
    show_on_dashboard INTEGER DEFAULT 0,
    installed_at TEXT,
    updated_at TEXT
);
CREATE TABLE IF NOT EXISTS sites (
    domain TEXT PRIMARY KEY,
    app_id TEXT,
    created_at TEXT
);
"""

# Columns a user (or the supervisor) may edit after install
EDITABLE_FIELDS = ("custom_args", "auto_start", "show_on_dashboard")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class InstalledApp:
    """A row of installed_apps."""
    app_id: str
    installed_version: str
    install_path: str
    exec_path: Optional[str] = None
    cli_path: Optional[str] = None
    custom_args: Optional[str] = None
    auto_start: bool = False
    show_on_dashboard: bool = False
    installed_at: Optional[str] = None
    updated_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "InstalledApp":
        return cls(
            app_id=row["app_id"],
            installed_version=row["installed_version"],
            install_path=row["install_path"],
            exec_path=row["exec_path"],
            cli_path=row["cli_path"],
            custom_args=row["custom_args"],
            auto_start=bool(row["auto_start"]),
            show_on_dashboard=bool(row["show_on_dashboard"]),
            installed_at=row["installed_at"],
            updated_at=row["updated_at"],
        )


class InstallRegistry:
    """
    SQLite-backed registry.

    Every call opens a short-lived connection under a lock, so the registry
    can be shared by the pipeline thread, the supervisor and the CLI.
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self._lock = threading.RLock()
        self._init_db()

    def _init_db(self) -> None:
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            with self._connect() as conn:
                conn.executescript(SCHEMA_SQL)
        except OSError as e:
            raise RegistryUnavailableError(str(self.db_path), cause=e)
        logger.debug(f"Registry ready at {self.db_path}")

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                conn = sqlite3.connect(self.db_path)
            except sqlite3.Error as e:
                raise RegistryUnavailableError(str(self.db_path), cause=e)
            conn.row_factory = sqlite3.Row
            try:
                yield conn
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                logger.error(f"Registry query failed: {e}")
                raise RegistryUnavailableError(str(self.db_path), cause=e)
            finally:
                conn.close()

    # Installed apps

    def upsert(self, app: InstalledApp) -> InstalledApp:
        """Insert or replace an installed app; stamps installed_at/updated_at."""
        now = _now()
        app.installed_at = app.installed_at or now
        app.updated_at = now
        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO installed_apps
                (app_id, installed_version, install_path, exec_path, cli_path,
                 custom_args, auto_start, show_on_dashboard, installed_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    app.app_id, app.installed_version, app.install_path,
                    app.exec_path, app.cli_path, app.custom_args,
                    int(app.auto_start), int(app.show_on_dashboard),
                    app.installed_at, app.updated_at,
                ),
            )
        logger.info(f"Registered {app.app_id} {app.installed_version}")
        return app

    def get(self, app_id: str) -> Optional[InstalledApp]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM installed_apps WHERE app_id = ?", (app_id,)
            ).fetchone()
        return InstalledApp.from_row(row) if row else None

    def all(self) -> List[InstalledApp]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM installed_apps ORDER BY app_id").fetchall()
        return [InstalledApp.from_row(r) for r in rows]

    def auto_start_apps(self) -> List[InstalledApp]:
        """Rows flagged for start on boot, in insertion order."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM installed_apps WHERE auto_start = 1 ORDER BY rowid"
            ).fetchall()
        return [InstalledApp.from_row(r) for r in rows]

    def is_installed(self, app_id: str) -> bool:
        return self.get(app_id) is not None

    def update_fields(self, app_id: str, **values: Any) -> bool:
        """
        Update editable columns of one row.

        Returns:
            True if a row was updated.

        Raises:
            ValueError: If a column is not editable.
        """
        bad = set(values) - set(EDITABLE_FIELDS)
        if bad:
            raise ValueError(f"Not editable: {', '.join(sorted(bad))}")
        if not values:
            return False

        assignments = ", ".join(f"{k} = ?" for k in values)
        params = [int(v) if isinstance(v, bool) else v for v in values.values()]
        params += [_now(), app_id]

        with self._connect() as conn:
            cursor = conn.execute(
                f"UPDATE installed_apps SET {assignments}, updated_at = ? WHERE app_id = ?",
                params,
            )
            return cursor.rowcount > 0

    def set_auto_start(self, app_id: str, enabled: bool) -> bool:
        return self.update_fields(app_id, auto_start=enabled)

    def delete(self, app_id: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM installed_apps WHERE app_id = ?", (app_id,))
            deleted = cursor.rowcount > 0
        if deleted:
            logger.info(f"Unregistered {app_id}")
        return deleted

    # Settings

    def get_setting(self, key: str, default: Optional[str] = None) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute("SELECT value FROM settings WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else default

    def set_setting(self, key: str, value: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO settings (key, value) VALUES (?, ?)", (key, value)
            )

    # Sites

    def add_site(self, domain: str, app_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO sites (domain, app_id, created_at) VALUES (?, ?, ?)",
                (domain, app_id, _now()),
            )

    def site_domains(self) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute("SELECT domain FROM sites ORDER BY domain").fetchall()
        return [r["domain"] for r in rows]

    def clear_sites(self) -> int:
        with self._connect() as conn:
            return conn.execute("DELETE FROM sites").rowcount
