"""
Install Pipeline - Download, extract, locate, configure and register one app.

Each install moves through InstallState phases:

    IDLE -> GROUP_CHECK -> DOWNLOADING -> EXTRACTING -> LOCATING
         -> CONFIGURING -> PERSISTING -> DONE | CANCELLED | FAILED

Global progress: download maps to 0-50, extraction to 50-90, then 90
"Finishing...", 95 "Locating ...", 100 "Installed!". Cancellation is
cooperative; every chunk and every extraction event checks the flag.
"""

from __future__ import annotations

import hashlib
import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional

import requests

from common.config import DevStackConfig
from common.decorators import timed
from common.exceptions import (
    ArchiveError,
    ChecksumError,
    DevStackError,
    DownloadError,
    FilesystemError,
    GroupConflictError,
    InstallCancelled,
    InstallInProgressError,
    UnknownAppError,
)
from common.result import OperationResult
from utils.fs_ops import remove_file, remove_tree

from .app_catalog import AppCatalog, AppVersion, CatalogEntry
from .extractor import ExtractEventType, ExtractionWorker
from .families import AppFamily, family_context, get_family
from .install_state import InstallState, InstallStateMachine
from .locator import find_executable
from .registry import InstallRegistry, InstalledApp
from .templates import TemplateLoader, get_template_loader

logger = logging.getLogger(__name__)

CHUNK_SIZE = 256 * 1024
PROGRESS_INTERVAL = 1.0
UNKNOWN_SIZE_PROGRESS = 25
WORKER_POLL_INTERVAL = 0.25
WORKER_JOIN_TIMEOUT = 10

# Past this point the install is committed and cannot be cancelled
_UNCANCELLABLE = frozenset({
    InstallState.PERSISTING, InstallState.DONE, InstallState.CANCELLED, InstallState.FAILED,
})


@dataclass
class ProgressEvent:
    """Install progress message."""
    app_id: str
    progress: int
    status: str
    log_detail: Optional[str] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            "appId": self.app_id,
            "progress": self.progress,
            "status": self.status,
            "logDetail": self.log_detail,
        }


@dataclass
class InstallContext:
    """Transient state of one in-flight install; at most one per app id."""
    app_id: str
    cancelled: bool = False
    response: Optional[requests.Response] = None
    worker: Optional[ExtractionWorker] = None
    archive_path: Optional[Path] = None
    install_dir: Optional[Path] = None
    warnings: List[str] = field(default_factory=list)
    state: InstallStateMachine = field(init=False)

    def __post_init__(self):
        self.state = InstallStateMachine(self.app_id)

    def check_cancelled(self) -> None:
        if self.cancelled:
            raise InstallCancelled(self.app_id)


class ProgressReporter:
    """
    Throttles progress events for one install.

    An event goes out when the status text changed, progress reached 100,
    or a second passed since the last one. Nothing goes out once cancelled.
    """

    def __init__(self, ctx: InstallContext, deliver: Callable[[ProgressEvent], None]):
        self.ctx = ctx
        self.deliver = deliver
        self._last_time = 0.0
        self._last_status = ""

    def emit(self, progress: int, status: str, log_detail: Optional[str] = None) -> None:
        if self.ctx.cancelled:
            return
        now = time.monotonic()
        if (
            status != self._last_status
            or progress == 100
            or now - self._last_time >= PROGRESS_INTERVAL
        ):
            self._last_time = now
            self._last_status = status
            self.deliver(ProgressEvent(self.ctx.app_id, progress, status, log_detail))


def _file_digest(path: Path, algorithm: str) -> str:
    digest = hashlib.new(algorithm)
    with open(path, "rb") as f:
        for block in iter(lambda: f.read(1024 * 1024), b""):
            digest.update(block)
    return digest.hexdigest()


def _mb(size: int) -> str:
    return f"{size / (1024 * 1024):.2f}"


class InstallPipeline:
    """
    Installs catalog apps into the data directory.

    Example:
        pipeline = InstallPipeline(catalog, registry, config)
        pipeline.add_progress_listener(lambda e: print(e.progress, e.status))
        result = pipeline.install("nginx", "1.28.1")
    """

    def __init__(
        self,
        catalog: AppCatalog,
        registry: InstallRegistry,
        config: Optional[DevStackConfig] = None,
        session: Optional[requests.Session] = None,
        templates: Optional[TemplateLoader] = None,
    ):
        self.catalog = catalog
        self.registry = registry
        self.config = config or DevStackConfig()
        self.session = session or requests.Session()
        self.session.max_redirects = 1
        self.templates = templates or get_template_loader()

        self._active: Dict[str, InstallContext] = {}
        self._lock = threading.RLock()
        self._listeners: List[Callable[[ProgressEvent], None]] = []

        # Set by the owner to restart running web servers after config changes
        self.restart_web_services: Optional[Callable[[], List[str]]] = None

    # Listeners

    def add_progress_listener(self, callback: Callable[[ProgressEvent], None]) -> None:
        with self._lock:
            self._listeners.append(callback)

    def remove_progress_listener(self, callback: Callable[[ProgressEvent], None]) -> None:
        with self._lock:
            if callback in self._listeners:
                self._listeners.remove(callback)

    def _deliver(self, event: ProgressEvent) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for callback in listeners:
            try:
                callback(event)
            except Exception as e:
                logger.warning(f"Progress listener error: {e}")

    # Queries

    def is_installing(self, app_id: str) -> bool:
        with self._lock:
            ctx = self._active.get(app_id)
            return ctx is not None and not ctx.cancelled

    def active_installs(self) -> List[str]:
        with self._lock:
            return [app_id for app_id, ctx in self._active.items() if not ctx.cancelled]

    # Install

    def install(
        self,
        app_id: str,
        version: Optional[str] = None,
        auto_start: bool = False,
    ) -> OperationResult:
        """
        Install one version of a catalog app.

        Args:
            app_id: Catalog app id
            version: Version to install (default: newest)
            auto_start: Start the service on boot

        Returns:
            OperationResult with install_path, exec_path, cli_path and version,
            or a failure; cancelled results have ``cancelled=True``.
        """
        entry = self.catalog.get(app_id)
        if entry is None:
            return OperationResult.fail(UnknownAppError(app_id))

        app_version = entry.get_version(version) if version else entry.latest
        if app_version is None:
            return OperationResult.fail(UnknownAppError(app_id, version))

        with self._lock:
            existing = self._active.get(app_id)
            if existing is not None:
                if not existing.cancelled:
                    return OperationResult.fail(InstallInProgressError(app_id))
                logger.warning(f"Force cleaning cancelled installation for {app_id}")
                del self._active[app_id]

            ctx = InstallContext(app_id)
            self._active[app_id] = ctx

        succeeded = False
        try:
            result = self._run(ctx, entry, app_version, auto_start)
            succeeded = True
            return result
        except InstallCancelled:
            logger.info(f"Installation of {app_id} cancelled")
            self._finish(ctx, InstallState.CANCELLED)
            return OperationResult.cancelled_result(app_id)
        except DevStackError as e:
            logger.error(f"Installation failed for {app_id}: {e}")
            self._finish(ctx, InstallState.FAILED)
            return OperationResult.fail(e, cancelled=ctx.cancelled)
        except Exception as e:
            logger.exception(f"Installation failed for {app_id}: {e}")
            self._finish(ctx, InstallState.FAILED)
            return OperationResult.fail(str(e), cancelled=ctx.cancelled)
        finally:
            self._cleanup(ctx, succeeded)

    def _finish(self, ctx: InstallContext, state: InstallState) -> None:
        if not ctx.state.is_terminal:
            ctx.state.transition(state)

    def _run(
        self,
        ctx: InstallContext,
        entry: CatalogEntry,
        app_version: AppVersion,
        auto_start: bool,
    ) -> OperationResult:
        progress = ProgressReporter(ctx, self._deliver)
        family = get_family(entry.id)

        ctx.state.transition(InstallState.GROUP_CHECK)
        self._check_group(entry)
        ctx.check_cancelled()

        logger.info(f"Starting installation for {entry.id} version {app_version.version}")
        ctx.state.transition(InstallState.DOWNLOADING)
        install_dir = self.config.apps_dir / entry.id
        ctx.install_dir = install_dir
        try:
            install_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise FilesystemError(str(install_dir), str(e), cause=e)

        archive = install_dir / app_version.filename
        ctx.archive_path = archive
        progress.emit(0, "Downloading...")
        self._download(ctx, app_version, archive, progress)
        ctx.check_cancelled()

        if self.config.verify_checksums:
            self._verify_checksum(app_version, archive)

        ctx.state.transition(InstallState.EXTRACTING)
        progress.emit(50, "Extracting...")
        self._extract(ctx, archive, install_dir, progress)
        remove_file(archive)
        ctx.check_cancelled()

        ctx.state.transition(InstallState.LOCATING)
        exec_path = None
        if entry.exec_file:
            progress.emit(95, f"Locating {entry.exec_file}...")
            exec_path = find_executable(install_dir, entry.exec_file)
            if exec_path is None:
                message = f"{entry.exec_file} not found in {install_dir}"
                logger.warning(message)
                ctx.warnings.append(message)
        cli_path = find_executable(install_dir, entry.cli_file) if entry.cli_file else None
        ctx.check_cancelled()

        ctx.state.transition(InstallState.CONFIGURING)
        restart_web = False
        if exec_path is not None:
            restart_web = self._configure(ctx, family, install_dir, exec_path)

        with self._lock:
            ctx.check_cancelled()
            ctx.state.transition(InstallState.PERSISTING)

        self.registry.upsert(InstalledApp(
            app_id=entry.id,
            installed_version=app_version.version,
            install_path=str(install_dir),
            exec_path=str(exec_path) if exec_path else None,
            cli_path=str(cli_path) if cli_path else None,
            custom_args=entry.default_args,
            auto_start=auto_start,
        ))
        self._update_default_version(family, entry.id)

        ctx.state.transition(InstallState.DONE)
        progress.emit(100, "Installed!")
        logger.info(f"Successfully installed {entry.id}")

        restart_web = self.reconfigure_dependents(exclude=entry.id, warnings=ctx.warnings) or restart_web
        if restart_web and self.restart_web_services:
            ctx.warnings.extend(self.restart_web_services())

        return OperationResult.ok(
            warnings=ctx.warnings,
            app_id=entry.id,
            version=app_version.version,
            install_path=str(install_dir),
            exec_path=str(exec_path) if exec_path else None,
            cli_path=str(cli_path) if cli_path else None,
        )

    # Phases

    def _check_group(self, entry: CatalogEntry) -> None:
        """Fail when another member of the entry's group is installed."""
        if not entry.group:
            return
        for sibling in self.catalog.group_members(entry.group):
            if sibling.id != entry.id and self.registry.is_installed(sibling.id):
                raise GroupConflictError(entry.id, entry.group, sibling.id, sibling.name)

    def _download(
        self,
        ctx: InstallContext,
        app_version: AppVersion,
        archive: Path,
        progress: ProgressReporter,
    ) -> None:
        url = app_version.download_url
        deadline = time.monotonic() + self.config.download_timeout

        try:
            response = self.session.get(
                url,
                stream=True,
                timeout=(self.config.connect_timeout, self.config.read_timeout),
            )
        except requests.Timeout as e:
            raise DownloadError(url, "Download timeout", cause=e)
        except requests.RequestException as e:
            ctx.check_cancelled()
            raise DownloadError(url, str(e), cause=e)

        ctx.response = response
        try:
            ctx.check_cancelled()
            if response.status_code != 200:
                raise DownloadError(url, f"HTTP Error: {response.status_code}")
            self._stream_to_file(ctx, response, archive, progress, deadline)
        except (InstallCancelled, DevStackError):
            raise
        except requests.Timeout as e:
            ctx.check_cancelled()
            raise DownloadError(url, "Download timeout", cause=e)
        except requests.RequestException as e:
            ctx.check_cancelled()
            raise DownloadError(url, str(e), cause=e)
        except OSError as e:
            ctx.check_cancelled()
            raise FilesystemError(str(archive), str(e), cause=e)
        except Exception as e:
            # A response closed by cancel() can fail in arbitrary ways
            if ctx.cancelled:
                raise InstallCancelled(ctx.app_id) from e
            raise
        finally:
            ctx.response = None
            response.close()

    def _stream_to_file(
        self,
        ctx: InstallContext,
        response: requests.Response,
        archive: Path,
        progress: ProgressReporter,
        deadline: float,
    ) -> None:
        total = int(response.headers.get("content-length") or 0)
        downloaded = 0

        with open(archive, "wb") as f:
            for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                ctx.check_cancelled()
                if time.monotonic() > deadline:
                    raise DownloadError(response.url or "", "Download timeout")
                if not chunk:
                    continue

                f.write(chunk)
                downloaded += len(chunk)

                if total > 0:
                    progress.emit(
                        round(downloaded / total * 50),
                        "Downloading...",
                        f"Downloaded {_mb(downloaded)} MB / {_mb(total)} MB",
                    )
                else:
                    progress.emit(
                        UNKNOWN_SIZE_PROGRESS,
                        "Downloading...",
                        f"Downloaded {_mb(downloaded)} MB",
                    )

        ctx.check_cancelled()
        logger.debug(f"Downloaded {downloaded} bytes to {archive}")

    @timed
    def _verify_checksum(self, app_version: AppVersion, archive: Path) -> None:
        """Verify sha1, else md5, when the catalog has one."""
        if app_version.sha1:
            algorithm, expected = "sha1", app_version.sha1
        elif app_version.md5:
            algorithm, expected = "md5", app_version.md5
        else:
            return

        actual = _file_digest(archive, algorithm)
        if actual.lower() != expected.lower():
            raise ChecksumError(archive.name, algorithm, expected, actual)
        logger.debug(f"{algorithm} verified for {archive.name}")

    @timed
    def _extract(
        self,
        ctx: InstallContext,
        archive: Path,
        install_dir: Path,
        progress: ProgressReporter,
    ) -> None:
        worker = ExtractionWorker(archive, install_dir, self.config.seven_zip_path)
        with self._lock:
            ctx.check_cancelled()
            ctx.worker = worker
        worker.start()

        while True:
            if ctx.cancelled:
                worker.terminate()
                raise InstallCancelled(ctx.app_id)

            try:
                event = worker.events.get(timeout=WORKER_POLL_INTERVAL)
            except queue.Empty:
                if not worker.is_alive() and worker.events.empty():
                    raise ArchiveError(str(archive), "Extraction worker stopped unexpectedly")
                continue

            if ctx.cancelled:
                worker.terminate()
                raise InstallCancelled(ctx.app_id)

            if event.type is ExtractEventType.START:
                progress.emit(50, "Extracting...", f"Starting extraction of {event.total_entries} files")
            elif event.type is ExtractEventType.PROGRESS:
                percent = 50
                if event.total_entries > 0:
                    percent = 50 + round(event.extracted_count / event.total_entries * 40)
                progress.emit(percent, "Extracting...", event.log_detail)
            elif event.type is ExtractEventType.WARNING:
                logger.warning(event.message)
                ctx.warnings.append(event.message)
            elif event.type is ExtractEventType.COMPLETE:
                progress.emit(90, "Finishing...")
                return
            elif event.type is ExtractEventType.ERROR:
                raise ArchiveError(str(archive), event.message)

    def _configure(
        self,
        ctx: InstallContext,
        family: AppFamily,
        install_dir: Path,
        exec_path: Path,
    ) -> bool:
        """Run the family post-install hook; failures become warnings."""
        logger.info(f"Configuring {ctx.app_id} ({family.name})")
        hook_ctx = family_context(
            ctx.app_id, install_dir, exec_path, self.config, self.registry, self.templates
        )
        try:
            return family.post_install(hook_ctx)
        except (DevStackError, OSError) as e:
            message = f"Failed to configure {ctx.app_id}: {e}"
            logger.error(message)
            ctx.warnings.append(message)
            return False

    def _update_default_version(self, family: AppFamily, app_id: str) -> None:
        """
        Record the family default version on its first install.

        A value naming a member that is no longer installed counts as unset.
        """
        key = family.default_version_setting
        value = family.default_version_value(app_id)
        if not key or not value:
            return

        current = self.registry.get_setting(key)
        if current:
            prefix = family.prefix or ""
            if self.registry.is_installed(f"{prefix}{current}"):
                return
        self.registry.set_setting(key, value)
        logger.info(f"Default {family.name} version set to {value}")

    def reconfigure_dependents(
        self,
        setting: Optional[str] = None,
        exclude: Optional[str] = None,
        warnings: Optional[List[str]] = None,
    ) -> bool:
        """
        Regenerate config for installed apps that depend on others.

        Args:
            setting: Only families depending on this settings key (default: all)
            exclude: App id to skip
            warnings: Collects hook failures

        Returns:
            True when web servers should be restarted.
        """
        restart_web = False
        for app in self.registry.all():
            if app.app_id == exclude:
                continue
            family = get_family(app.app_id)
            if not family.depends_on:
                continue
            if setting is not None and setting not in family.depends_on:
                continue

            hook_ctx = family_context(
                app.app_id, Path(app.install_path), app.exec_path,
                self.config, self.registry, self.templates,
            )
            try:
                restart_web = family.reconfigure(hook_ctx) or restart_web
            except (DevStackError, OSError) as e:
                message = f"Failed to reconfigure {app.app_id}: {e}"
                logger.error(message)
                if warnings is not None:
                    warnings.append(message)
        return restart_web

    # Cancel and cleanup

    def cancel(self, app_id: str) -> OperationResult:
        """
        Cancel an in-flight install.

        Closes the download, stops extraction and removes the partial install
        directory right away; the pipeline's own cleanup reconciles the rest.
        """
        with self._lock:
            ctx = self._active.get(app_id)
            if ctx is None:
                return OperationResult.fail("No active installation found", app_id=app_id)
            if ctx.state.state in _UNCANCELLABLE:
                return OperationResult.fail(
                    "Installation is finishing and can no longer be cancelled", app_id=app_id
                )
            ctx.cancelled = True
            response = ctx.response
            worker = ctx.worker
            install_dir = ctx.install_dir

        logger.info(f"Cancelling installation for {app_id}")

        if response is not None:
            try:
                response.close()
            except Exception as e:
                logger.debug(f"Closing download for {app_id}: {e}")

        if worker is not None:
            worker.terminate()

        if install_dir is not None:
            with self._lock:
                # A newer install may have taken over once the flag was set
                if self._active.get(app_id) is ctx and install_dir.exists() and remove_tree(install_dir):
                    logger.info(f"Removed partial installation directory for {app_id}")

        return OperationResult.ok(app_id=app_id)

    def _cleanup(self, ctx: InstallContext, succeeded: bool) -> None:
        """
        Best-effort; never raises.

        Files are only removed while ctx still owns the app id. A newer
        install that took over a cancelled one shares the archive path and
        the install directory, and takeover needs the lock held here.
        """
        if ctx.cancelled and ctx.worker is not None:
            ctx.worker.terminate()
            ctx.worker.join(timeout=WORKER_JOIN_TIMEOUT)

        with self._lock:
            if self._active.get(ctx.app_id) is not ctx:
                logger.debug(f"Superseded install of {ctx.app_id} leaves its files to the new owner")
                return

            if not succeeded:
                remove_file(ctx.archive_path)
            if ctx.cancelled:
                remove_tree(ctx.install_dir, max_attempts=3, delay=0.5)
            del self._active[ctx.app_id]
