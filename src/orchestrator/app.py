"""
DevStack - Wires the catalog, registry, install pipeline and supervisor.

One DevStack is constructed at startup and closed at exit; the CLI and any
other front end talk to it instead of the components.
"""

from __future__ import annotations

import logging
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import requests

from common.config import DevStackConfig
from common.decorators import returns_result
from common.exceptions import (
    DevStackError,
    InstallInProgressError,
    UnknownAppError,
    ValidationError,
)
from common.result import OperationResult
from services import log_files
from services.log_buffer import LogEvent
from services.process_utils import is_running_by_name, kill_by_name
from services.supervisor import ServiceSupervisor
from store.app_catalog import AppCatalog
from store.catalog_resolver import CatalogResolver
from store.families import FAMILIES, get_family
from store.installer import InstallPipeline, ProgressEvent
from store.registry import InstallRegistry
from store.templates import TemplateLoader, get_template_loader
from utils.fs_ops import remove_tree

from .hosts import HostsEditor, HostsFileEditor

logger = logging.getLogger(__name__)

STOP_WAIT_TIMEOUT = 10.0
STOP_POLL_INTERVAL = 0.5
UNINSTALL_REMOVE_ATTEMPTS = 5
UNINSTALL_REMOVE_DELAY = 1.0


class DevStack:
    """
    Local development stack.

    Example:
        stack = DevStack()
        stack.install("nginx")
        stack.start_service("nginx")
        ...
        stack.close()
    """

    def __init__(
        self,
        config: Optional[DevStackConfig] = None,
        session: Optional[requests.Session] = None,
        hosts_editor: Optional[HostsEditor] = None,
        templates: Optional[TemplateLoader] = None,
    ):
        self.config = config or DevStackConfig.load()
        self.config.ensure_dirs()
        self.templates = templates or get_template_loader()

        self.catalog = AppCatalog(self.config.catalog_path)
        if not self.catalog.load():
            logger.warning("Catalog unavailable; refresh it before installing")

        self.registry = InstallRegistry(self.config.db_path)
        self.resolver = CatalogResolver(self.catalog, self.config, session)
        self.pipeline = InstallPipeline(
            self.catalog, self.registry, self.config, session, self.templates
        )
        self.pipeline.restart_web_services = self.restart_web_services
        self.supervisor = ServiceSupervisor(self.registry, self.config, self.templates)
        self.hosts = hosts_editor or HostsFileEditor()

    # Lifecycle

    def start(self) -> Dict[str, OperationResult]:
        """Bring back services flagged for auto-start."""
        return self.supervisor.recover_autostart()

    def close(self) -> None:
        self.supervisor.shutdown()

    def __enter__(self) -> "DevStack":
        return self

    def __exit__(self, *args) -> None:
        self.close()

    # Catalog

    def refresh_catalog(self) -> OperationResult:
        return self.resolver.refresh()

    def list_apps(self) -> List[Dict[str, Any]]:
        """
        Catalog entries merged with their install state.

        PHP rows missing custom_args get the catalog default written back,
        otherwise php-cgi would start without a FastCGI bind address.
        """
        installed = {row.app_id: row for row in self.registry.all()}
        running = set(self.supervisor.running_apps())

        apps = []
        for entry in self.catalog.all():
            data = entry.to_dict()
            row = installed.get(entry.id)
            if row is None:
                data.update(status="not_installed", show_on_dashboard=False, running=False)
                apps.append(data)
                continue

            if get_family(row.app_id).name == "php" and not row.custom_args and entry.default_args:
                self.registry.update_fields(row.app_id, custom_args=entry.default_args)
                row.custom_args = entry.default_args
                logger.info(f"Restored default args for {row.app_id}")

            data.update(
                status="installed",
                installed_version=row.installed_version,
                install_path=row.install_path,
                exec_path=row.exec_path,
                cli_path=row.cli_path,
                custom_args=row.custom_args,
                auto_start=row.auto_start,
                show_on_dashboard=row.show_on_dashboard,
                installed_at=row.installed_at,
                running=row.app_id in running,
            )
            apps.append(data)
        return apps

    # Install

    def install(
        self,
        app_id: str,
        version: Optional[str] = None,
        auto_start: bool = False,
    ) -> OperationResult:
        return self.pipeline.install(app_id, version, auto_start)

    def install_in_background(
        self,
        app_id: str,
        version: Optional[str] = None,
        auto_start: bool = False,
        on_done: Optional[Callable[[OperationResult], None]] = None,
    ) -> threading.Thread:
        """Run an install on a daemon thread; on_done receives the result."""
        def run():
            result = self.pipeline.install(app_id, version, auto_start)
            if on_done:
                on_done(result)

        thread = threading.Thread(target=run, name=f"install-{app_id}", daemon=True)
        thread.start()
        return thread

    def cancel_install(self, app_id: str) -> OperationResult:
        return self.pipeline.cancel(app_id)

    def add_progress_listener(self, callback: Callable[[ProgressEvent], None]) -> None:
        self.pipeline.add_progress_listener(callback)

    # Uninstall

    @returns_result
    def uninstall(self, app_id: str) -> OperationResult:
        """
        Remove an installed app.

        A running service is stopped first. Failing to delete the directory
        does not fail the uninstall; the result carries a warning instead.
        """
        app = self.registry.get(app_id)
        if app is None:
            raise UnknownAppError(app_id)
        if self.pipeline.is_installing(app_id):
            raise InstallInProgressError(app_id)

        logger.info(f"Uninstalling {app_id} from {app.install_path}")
        warnings: List[str] = []

        if app.exec_path:
            self._stop_before_uninstall(app_id, Path(app.exec_path), warnings)

        self.registry.delete(app_id)

        family = get_family(app_id)
        app_dir = self.config.apps_dir / app_id
        if app_dir.exists():
            logger.info(f"Removing app directory: {app_dir}")
            if not remove_tree(app_dir, UNINSTALL_REMOVE_ATTEMPTS, UNINSTALL_REMOVE_DELAY):
                message = f"App uninstalled but failed to remove directory: {app_dir}"
                logger.warning(message)
                warnings.append(message)
                return OperationResult.ok(warnings=warnings, app_id=app_id)

        if family.owns_vhosts:
            self._purge_sites(warnings)

        return OperationResult.ok(warnings=warnings, app_id=app_id)

    def _stop_before_uninstall(self, app_id: str, exec_path: Path, warnings: List[str]) -> None:
        if not (self.supervisor.is_tracked(app_id) or is_running_by_name(exec_path)):
            return

        logger.info(f"Service {app_id} is running, stopping before uninstall...")
        result = self.supervisor.stop(app_id, exec_path)
        if not result:
            warnings.append(f"Failed to stop service before uninstall: {result.error}")

        deadline = time.monotonic() + STOP_WAIT_TIMEOUT
        while is_running_by_name(exec_path):
            if time.monotonic() > deadline:
                logger.warning(f"{exec_path.name} still running after timeout, force killing")
                kill_by_name(exec_path, timeout=self.config.kill_timeout)
                break
            time.sleep(STOP_POLL_INTERVAL)

    def _purge_sites(self, warnings: List[str]) -> None:
        """Drop virtual-host state: hosts entries, the sites table and directory."""
        try:
            domains = self.registry.site_domains()
            if domains and not self.hosts.remove_domains(domains):
                warnings.append("Failed to remove site domains from the hosts file")
            self.registry.clear_sites()
        except (DevStackError, OSError) as e:
            logger.warning(f"Failed to clean up sites data: {e}")
            warnings.append(f"Failed to clean up sites data: {e}")

        if self.config.sites_dir.exists() and not remove_tree(self.config.sites_dir):
            warnings.append(f"Failed to remove {self.config.sites_dir}")

    # Services

    def _service_target(self, app_id: str) -> Tuple[Path, Optional[str]]:
        app = self.registry.get(app_id)
        if app is None or not app.exec_path:
            raise UnknownAppError(app_id)
        entry = self.catalog.get(app_id)
        return Path(app.exec_path), entry.stop_args if entry else None

    @returns_result
    def start_service(
        self, app_id: str, args: Optional[str] = None, detach: bool = False
    ) -> OperationResult:
        exec_path, _ = self._service_target(app_id)
        return self.supervisor.start(app_id, exec_path, args, detach=detach)

    @returns_result
    def stop_service(self, app_id: str) -> OperationResult:
        exec_path, stop_args = self._service_target(app_id)
        return self.supervisor.stop(app_id, exec_path, stop_args)

    @returns_result
    def restart_service(
        self, app_id: str, args: Optional[str] = None, detach: bool = False
    ) -> OperationResult:
        exec_path, stop_args = self._service_target(app_id)
        return self.supervisor.restart(app_id, exec_path, args, stop_args, detach=detach)

    @returns_result
    def service_status(self, app_id: str) -> OperationResult:
        exec_path, _ = self._service_target(app_id)
        return self.supervisor.status(app_id, exec_path)

    def get_logs(self, app_id: str) -> List[LogEvent]:
        return self.supervisor.get_logs(app_id)

    def clear_logs(self, app_id: str) -> OperationResult:
        return self.supervisor.clear_logs(app_id)

    def add_log_listener(self, callback: Callable[[LogEvent], None]) -> None:
        self.supervisor.add_log_listener(callback)

    # Server log files

    def _installed(self, app_id: str) -> Tuple[Path, Optional[Path]]:
        app = self.registry.get(app_id)
        if app is None:
            raise UnknownAppError(app_id)
        return Path(app.install_path), Path(app.exec_path) if app.exec_path else None

    @returns_result
    def list_log_files(self, app_id: str) -> OperationResult:
        install_path, exec_path = self._installed(app_id)
        log_dir = log_files.find_log_dir(install_path, exec_path)
        return OperationResult.ok(
            logs_path=str(log_dir) if log_dir else None,
            files=[p.name for p in log_files.list_log_files(log_dir)],
        )

    @returns_result
    def read_log_file(self, app_id: str, filename: str) -> OperationResult:
        install_path, exec_path = self._installed(app_id)
        path = log_files.locate_log_file(install_path, exec_path, filename)
        if path is None:
            return OperationResult.ok(content="", size=0)
        return OperationResult.ok(content=log_files.read_tail(path), size=path.stat().st_size)

    @returns_result
    def clear_log_file(self, app_id: str, filename: str) -> OperationResult:
        install_path, exec_path = self._installed(app_id)
        path = log_files.locate_log_file(install_path, exec_path, filename)
        if path is None:
            return OperationResult.fail(f"Log file not found: {filename}")
        log_files.truncate(path)
        return OperationResult.ok()

    def restart_web_services(self) -> List[str]:
        """
        Restart running web servers so they pick up regenerated config.

        Returns:
            Warnings for servers that failed to come back.
        """
        warnings = []
        for app in self.registry.all():
            if not app.exec_path or not get_family(app.app_id).web_server:
                continue
            if not (self.supervisor.is_tracked(app.app_id) or is_running_by_name(app.exec_path)):
                continue

            logger.info(f"Restarting {app.app_id} to apply configuration")
            result = self.restart_service(app.app_id)
            if not result:
                warnings.append(f"Failed to restart {app.app_id}: {result.error}")
        return warnings

    # Settings

    def _update_field(self, app_id: str, **values: Any) -> OperationResult:
        if not self.registry.update_fields(app_id, **values):
            return OperationResult.fail(UnknownAppError(app_id))
        return OperationResult.ok(app_id=app_id, **values)

    @returns_result
    def set_custom_args(self, app_id: str, args: str) -> OperationResult:
        return self._update_field(app_id, custom_args=args)

    @returns_result
    def set_auto_start(self, app_id: str, enabled: bool) -> OperationResult:
        return self._update_field(app_id, auto_start=enabled)

    @returns_result
    def set_show_on_dashboard(self, app_id: str, enabled: bool) -> OperationResult:
        return self._update_field(app_id, show_on_dashboard=enabled)

    def get_default_versions(self) -> Dict[str, Optional[str]]:
        keys = {f.default_version_setting for f in FAMILIES if f.default_version_setting}
        return {key: self.registry.get_setting(key) for key in sorted(keys)}

    @returns_result
    def set_default_version(self, setting: str, value: str) -> OperationResult:
        """
        Choose the default member of a family, e.g. ("default_php_version", "8.3").

        The member must be installed. Dependent config is regenerated.
        """
        family = next((f for f in FAMILIES if f.default_version_setting == setting), None)
        if family is None:
            raise ValidationError(f"Unknown setting: {setting}", code="UNKNOWN_SETTING")

        prefix = family.prefix or ""
        if value.startswith(prefix):
            value = value[len(prefix):]
        if not self.registry.is_installed(f"{prefix}{value}"):
            raise UnknownAppError(f"{prefix}{value}")

        self.registry.set_setting(setting, value)
        logger.info(f"{setting} updated to {value}")
        return self.dependency_changed(setting)

    @returns_result
    def dependency_changed(self, setting: str) -> OperationResult:
        """Reconfigure apps depending on a setting and restart web servers."""
        warnings: List[str] = []
        restart_web = self.pipeline.reconfigure_dependents(setting=setting, warnings=warnings)
        if restart_web:
            warnings.extend(self.restart_web_services())
        return OperationResult.ok(warnings=warnings, reconfigured=restart_web)
