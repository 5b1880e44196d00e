"""
Pytest configuration and shared fixtures for DevStack tests.

Provides a throwaway data directory, a seeded catalog, a registry and
mocks for HTTP sessions.
"""

import io
import os
import sys
import time
import zipfile
from pathlib import Path
from typing import Dict, Generator, Optional
from unittest.mock import MagicMock

import pytest

# Add src to path
SRC_DIR = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(SRC_DIR))


# ============ Environment Fixtures ============

@pytest.fixture
def temp_home(tmp_path: Path) -> Generator[Path, None, None]:
    """Provide a temporary home and DEVSTACK_HOME."""
    old_home = os.environ.get("HOME")
    old_devstack = os.environ.get("DEVSTACK_HOME")
    os.environ["HOME"] = str(tmp_path)
    os.environ["DEVSTACK_HOME"] = str(tmp_path / "devstack")

    yield tmp_path

    for key, value in (("HOME", old_home), ("DEVSTACK_HOME", old_devstack)):
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value


@pytest.fixture
def config(tmp_path: Path):
    """Config rooted in tmp_path with no waiting between steps."""
    from common.config import DevStackConfig

    cfg = DevStackConfig(
        data_dir=tmp_path / "data",
        seven_zip_path=str(tmp_path / "no-such-7z"),
        start_grace_period=0.3,
        restart_delay=0,
        autostart_delay=0,
        autostart_stagger=0,
        kill_timeout=1.0,
    )
    cfg.ensure_dirs()
    return cfg


@pytest.fixture
def catalog(config):
    """Catalog seeded from the bundled apps.json."""
    from store.app_catalog import AppCatalog

    cat = AppCatalog(config.catalog_path)
    assert cat.load()
    return cat


@pytest.fixture
def registry(config):
    from store.registry import InstallRegistry

    return InstallRegistry(config.db_path)


# ============ Archive Fixtures ============

def build_zip(files: Dict[str, str]) -> bytes:
    """Zip archive in memory; keys are archive paths."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as zf:
        for name, content in files.items():
            zf.writestr(name, content)
    return buffer.getvalue()


@pytest.fixture
def nginx_zip() -> bytes:
    return build_zip({
        "nginx-1.28.1/nginx.exe": "MZ fake nginx",
        "nginx-1.28.1/conf/nginx.conf": "# stock config\n",
        "nginx-1.28.1/conf/mime.types": "types {}\n",
        "nginx-1.28.1/html/index.html": "<h1>nginx</h1>\n",
    })


# ============ HTTP Fixtures ============

def make_response(
    body: bytes = b"",
    status_code: int = 200,
    chunk_size: int = 4096,
    headers: Optional[Dict[str, str]] = None,
    text: Optional[str] = None,
) -> MagicMock:
    """A requests.Response stand-in that streams body in chunks."""
    response = MagicMock()
    response.status_code = status_code
    response.url = "https://example.invalid/archive"
    response.headers = headers if headers is not None else {"content-length": str(len(body))}
    response.text = text if text is not None else body.decode("utf-8", errors="replace")
    # The caller's chunk_size is ignored so tests control chunking
    response.iter_content.side_effect = lambda **kwargs: (
        body[i:i + chunk_size] for i in range(0, len(body), chunk_size)
    )
    return response


@pytest.fixture
def mock_session():
    """requests.Session stand-in; set session.get.return_value per test."""
    session = MagicMock()
    session.max_redirects = 30
    return session


# ============ Process Helpers ============

def wait_for(predicate, timeout: float = 5.0, interval: float = 0.05) -> bool:
    """Poll predicate until it holds or timeout passes."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return False


def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line(
        "markers", "unit: fast unit tests with no external deps"
    )
    config.addinivalue_line(
        "markers", "integration: tests that spawn processes or touch many components"
    )
