"""
DevStack Store

App catalog, install registry and the install pipeline.
"""

from .app_catalog import AppCatalog, AppVersion, CatalogEntry
from .catalog_resolver import CatalogResolver, parse_manifest
from .installer import InstallPipeline, ProgressEvent
from .registry import InstallRegistry, InstalledApp

__all__ = [
    "AppCatalog",
    "AppVersion",
    "CatalogEntry",
    "CatalogResolver",
    "parse_manifest",
    "InstallPipeline",
    "ProgressEvent",
    "InstallRegistry",
    "InstalledApp",
]
