"""
App Catalog - Installable apps and their downloadable versions.

The catalog is a JSON document kept in the data directory. Static metadata
(names, groups, executable targets, default arguments) ships with DevStack;
the version lists are refreshed from the remote manifest.
"""

from __future__ import annotations

import json
import logging
import shutil
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, List, Dict, Any

from utils.fs_ops import atomic_write_json

from .versioning import version_key

logger = logging.getLogger(__name__)

SEED_CATALOG = Path(__file__).parent / "data" / "apps.json"


@dataclass
class AppVersion:
    """One downloadable archive of an app."""
    version: str
    filename: str
    download_url: str
    size: int = 0
    md5: str = ""
    sha1: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "filename": self.filename,
            "download_url": self.download_url,
            "size": self.size,
            "md5": self.md5,
            "sha1": self.sha1,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AppVersion":
        return cls(
            version=str(data["version"]),
            filename=data.get("filename", ""),
            download_url=data.get("download_url", ""),
            size=int(data.get("size") or 0),
            md5=data.get("md5") or "",
            sha1=data.get("sha1") or "",
        )


@dataclass
class CatalogEntry:
    """
    An installable app.

    Attributes:
        id: Unique app id, also the first path segment in the manifest
        name: Display name
        group: Exclusive group tag; at most one member may be installed
        exec_file: Primary executable target, e.g. "bin/mysqld.exe"
        cli_file: Optional CLI executable target
        default_args: Start arguments stored on install
        stop_args: Vendor stop-command arguments, if the app has one
        versions: Available versions, newest first
    """
    id: str
    name: str
    group: Optional[str] = None
    exec_file: Optional[str] = None
    cli_file: Optional[str] = None
    default_args: str = ""
    stop_args: Optional[str] = None
    description: str = ""
    category: str = ""
    versions: List[AppVersion] = field(default_factory=list)

    # Unmodelled keys from the document survive a save
    extra: Dict[str, Any] = field(default_factory=dict, repr=False)

    _KNOWN_KEYS = (
        "id", "name", "group", "exec_file", "cli_file", "default_args",
        "stop_args", "description", "category", "versions",
    )

    @property
    def latest(self) -> Optional[AppVersion]:
        return self.versions[0] if self.versions else None

    def get_version(self, version: str) -> Optional[AppVersion]:
        for v in self.versions:
            if v.version == version:
                return v
        return None

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.extra)
        data.update({
            "id": self.id,
            "name": self.name,
            "group": self.group,
            "exec_file": self.exec_file,
            "cli_file": self.cli_file,
            "default_args": self.default_args,
            "stop_args": self.stop_args,
            "description": self.description,
            "category": self.category,
            "versions": [v.to_dict() for v in self.versions],
        })
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CatalogEntry":
        return cls(
            id=data["id"],
            name=data.get("name", data["id"]),
            group=data.get("group") or None,
            exec_file=data.get("exec_file") or None,
            cli_file=data.get("cli_file") or None,
            default_args=data.get("default_args") or "",
            stop_args=data.get("stop_args") or None,
            description=data.get("description", ""),
            category=data.get("category", ""),
            versions=[AppVersion.from_dict(v) for v in data.get("versions", [])],
            extra={k: v for k, v in data.items() if k not in cls._KNOWN_KEYS},
        )


class AppCatalog:
    """
    Catalog document management.

    Readers get snapshots; the resolver is the only writer of version lists.
    """

    def __init__(self, catalog_path: Path, seed_path: Optional[Path] = None):
        """
        Initialize AppCatalog.

        Args:
            catalog_path: Writable apps.json in the data directory
            seed_path: Bundled catalog copied in when catalog_path is missing
        """
        self.catalog_path = Path(catalog_path)
        self.seed_path = seed_path if seed_path is not None else SEED_CATALOG
        self.version = "1.0"
        self.last_updated: Optional[str] = None
        self._apps: Dict[str, CatalogEntry] = {}
        self._lock = threading.RLock()
        self._loaded = False

    @property
    def loaded(self) -> bool:
        return self._loaded

    def ensure_seeded(self) -> bool:
        """Copy the bundled catalog into place on first run."""
        if self.catalog_path.exists():
            return False
        if not self.seed_path or not Path(self.seed_path).exists():
            logger.warning(f"No seed catalog at {self.seed_path}")
            return False

        self.catalog_path.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(self.seed_path, self.catalog_path)
        logger.info(f"Seeded catalog at {self.catalog_path}")
        return True

    def load(self) -> bool:
        """
        Load the catalog from disk.

        Returns:
            True if loaded successfully.
        """
        self.ensure_seeded()

        if not self.catalog_path.exists():
            logger.warning(f"Catalog not found: {self.catalog_path}")
            return False

        try:
            with open(self.catalog_path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to load catalog: {e}")
            return False

        apps: Dict[str, CatalogEntry] = {}
        for app_data in data.get("apps", []):
            try:
                entry = CatalogEntry.from_dict(app_data)
                entry.versions.sort(key=lambda v: version_key(v.version), reverse=True)
                apps[entry.id] = entry
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Failed to load app: {e}")

        with self._lock:
            self._apps = apps
            self.version = str(data.get("version", "1.0"))
            self.last_updated = data.get("lastUpdated")
            self._loaded = True

        logger.info(f"Loaded {len(apps)} apps from catalog")
        return True

    def to_document(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "version": self.version,
                "lastUpdated": self.last_updated,
                "apps": [app.to_dict() for app in self._apps.values()],
            }

    def save(self) -> None:
        """
        Save the catalog to disk atomically.

        Raises:
            OSError: If the document cannot be written.
        """
        atomic_write_json(self.catalog_path, self.to_document())
        logger.info(f"Saved {len(self._apps)} apps to catalog")

    def merge_versions(self, versions: Dict[str, List[AppVersion]]) -> int:
        """
        Replace version lists for known apps; static metadata is kept.

        Apps absent from the manifest keep their old versions. Apps present
        only in the manifest are ignored.

        Returns:
            Number of catalog entries whose versions were replaced.
        """
        updated = 0
        with self._lock:
            for app in self._apps.values():
                found = versions.get(app.id)
                if found:
                    app.versions = sorted(found, key=lambda v: version_key(v.version), reverse=True)
                    updated += 1
            self.last_updated = datetime.now(timezone.utc).isoformat()
        return updated

    def get(self, app_id: str) -> Optional[CatalogEntry]:
        """Get app by ID."""
        with self._lock:
            return self._apps.get(app_id)

    def all(self) -> List[CatalogEntry]:
        """Get all apps."""
        with self._lock:
            return list(self._apps.values())

    def group_members(self, group: str) -> List[CatalogEntry]:
        """Apps sharing an exclusive group tag."""
        with self._lock:
            return [app for app in self._apps.values() if app.group == group]

    def search(self, query: str = "", category: Optional[str] = None) -> List[CatalogEntry]:
        """
        Search the catalog.

        Args:
            query: Text search in id, name and description
            category: Filter by category

        Returns:
            List of matching apps.
        """
        query_lower = query.lower()
        results = []
        for app in self.all():
            if query:
                searchable = f"{app.id} {app.name} {app.description}".lower()
                if query_lower not in searchable:
                    continue
            if category and app.category != category:
                continue
            results.append(app)
        return results
