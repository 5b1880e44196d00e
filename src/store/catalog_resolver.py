"""
Catalog Resolver - Refresh available versions from the remote manifest.

The manifest is an XML listing of every archive in the download collection:

    <files>
      <file name="nginx/nginx-1.28.1.zip" source="original">
        <size>1893412</size>
        <md5>...</md5>
        <sha1>...</sha1>
      </file>
    </files>

The first path segment is the app id; the version comes from the filename.
"""

from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from typing import Dict, List, Optional

import requests

from common.config import DevStackConfig
from common.exceptions import NetworkError
from common.result import OperationResult

from .app_catalog import AppCatalog, AppVersion
from .versioning import extract_version, version_key

logger = logging.getLogger(__name__)

SKIP_MARKERS = ("_meta", ".torrent")


def _child_text(element: ET.Element, tag: str) -> str:
    child = element.find(tag)
    if child is None or child.text is None:
        return ""
    return child.text.strip()


def _is_listing_noise(name: str) -> bool:
    return any(marker in name for marker in SKIP_MARKERS) or name.endswith(".xml")


def parse_manifest(xml_text: str, base_url: str) -> Dict[str, List[AppVersion]]:
    """
    Parse the remote manifest into per-app version lists.

    Args:
        xml_text: Manifest document
        base_url: Prefix joined with each manifest-relative path

    Returns:
        Dict of app id to versions, newest first. Entries without an
        extractable version are dropped.

    Raises:
        xml.etree.ElementTree.ParseError: If the document is not XML.
    """
    root = ET.fromstring(xml_text)
    versions: Dict[str, List[AppVersion]] = {}

    for file_el in root.iter("file"):
        name = file_el.get("name")
        if not name or _is_listing_noise(name):
            continue

        parts = name.split("/")
        if len(parts) < 2:
            continue

        app_id = parts[0].lower()
        filename = parts[1]

        version = extract_version(filename, app_id)
        if not version:
            logger.debug(f"No version in {name}, skipping")
            continue

        size = _child_text(file_el, "size")
        versions.setdefault(app_id, []).append(AppVersion(
            version=version,
            filename=filename,
            download_url=base_url + name,
            size=int(size) if size.isdigit() else 0,
            md5=_child_text(file_el, "md5"),
            sha1=_child_text(file_el, "sha1"),
        ))

    for app_versions in versions.values():
        app_versions.sort(key=lambda v: version_key(v.version), reverse=True)

    return versions


class CatalogResolver:
    """
    Fetches the manifest and merges its versions into the local catalog.

    Example:
        resolver = CatalogResolver(catalog, config)
        result = resolver.refresh()
        if result:
            print(f"Updated {result['updated_count']} apps")
    """

    def __init__(
        self,
        catalog: AppCatalog,
        config: Optional[DevStackConfig] = None,
        session: Optional[requests.Session] = None,
    ):
        self.catalog = catalog
        self.config = config or DevStackConfig()
        self.session = session or requests.Session()
        # The collection host answers with a single redirect to a mirror
        self.session.max_redirects = 1

    def fetch_manifest(self) -> str:
        """
        Download the manifest text.

        Raises:
            NetworkError: On timeout, connection failure or non-200 status.
        """
        url = self.config.manifest_url
        logger.info(f"Fetching manifest from {url}")

        try:
            response = self.session.get(url, timeout=self.config.refresh_timeout)
        except requests.Timeout as e:
            raise NetworkError(
                "Request timeout", code="MANIFEST_TIMEOUT", details={"url": url}, cause=e
            )
        except requests.RequestException as e:
            raise NetworkError(
                f"Failed to fetch manifest: {e}", code="MANIFEST_UNAVAILABLE",
                details={"url": url}, cause=e,
            )

        if response.status_code != 200:
            raise NetworkError(
                f"HTTP Error: {response.status_code}",
                code="MANIFEST_HTTP_ERROR",
                details={"url": url, "status": response.status_code},
            )

        return response.text

    def refresh(self) -> OperationResult:
        """
        Refresh version lists from the manifest.

        The local catalog is untouched when the fetch or parse fails.

        Returns:
            OperationResult with updated_count and last_updated.
        """
        try:
            xml_text = self.fetch_manifest()
        except NetworkError as e:
            logger.error(f"Catalog refresh failed: {e}")
            return OperationResult.fail(e)

        try:
            found = parse_manifest(xml_text, self.config.archive_base_url)
        except ET.ParseError as e:
            logger.error(f"Manifest is not valid XML: {e}")
            return OperationResult.fail(f"Invalid manifest: {e}")

        if not self.catalog.loaded and not self.catalog.load():
            return OperationResult.fail("Failed to read apps.json")

        updated = self.catalog.merge_versions(found)

        try:
            self.catalog.save()
        except OSError as e:
            logger.error(f"Failed to save catalog: {e}")
            return OperationResult.fail(f"Failed to save apps.json: {e}")

        logger.info(f"Catalog refreshed: {updated} apps updated, {len(found)} in manifest")
        return OperationResult.ok(
            updated_count=updated,
            last_updated=self.catalog.last_updated,
        )
