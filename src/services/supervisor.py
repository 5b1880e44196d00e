"""
Service Supervisor - Start, stop and watch installed server processes.

Each started service gets two reader threads (stdout, stderr) feeding the
ring buffer and one waiter thread that logs the exit and drops the entry.
A detached service runs in its own session with stdout and stderr written
to <logs_dir>/<app_id>.out.log, so it keeps running after the caller exits.
Start success sets the app's auto_start flag, an explicit stop clears it, and
recover_autostart() brings flagged services back after a restart.
"""

from __future__ import annotations

import logging
import subprocess
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Union

from common.config import DevStackConfig
from common.decorators import handle_errors, returns_result
from common.exceptions import (
    DevStackError,
    FilesystemError,
    ServiceAlreadyRunningError,
    ServiceStartError,
    ServiceStopError,
    UnknownAppError,
)
from common.result import OperationResult
from store.families import get_family
from store.registry import InstallRegistry
from store.templates import TemplateLoader, get_template_loader

from .log_buffer import LogBuffer, LogEvent, LogType
from .log_files import read_tail
from .process_utils import (
    is_alive,
    is_running_by_name,
    kill_by_name,
    parse_args,
    terminate_tree,
)

logger = logging.getLogger(__name__)

RECENT_LOG_LINES = 10
READER_JOIN_TIMEOUT = 1.0


@dataclass
class RunningProcess:
    """A service process this supervisor started."""
    app_id: str
    process: subprocess.Popen
    exec_path: Path
    started_at: float = field(default_factory=time.time)
    output_path: Optional[Path] = None
    threads: List[threading.Thread] = field(default_factory=list, repr=False)

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def detached(self) -> bool:
        """Output goes to a file and the process survives its parent."""
        return self.output_path is not None

    def is_alive(self) -> bool:
        return self.process.poll() is None and is_alive(self.pid)


class ServiceSupervisor:
    """
    Owns every running service process.

    Constructed once at startup and torn down with shutdown().
    """

    def __init__(
        self,
        registry: InstallRegistry,
        config: Optional[DevStackConfig] = None,
        templates: Optional[TemplateLoader] = None,
    ):
        self.registry = registry
        self.config = config or DevStackConfig()
        self.templates = templates or get_template_loader()
        self.logs = LogBuffer(self.config.log_buffer_size)

        self._processes: Dict[str, RunningProcess] = {}
        self._starting: set = set()
        self._lock = threading.RLock()

    # Logs

    def _log(self, app_id: str, log_type: LogType, message: str) -> None:
        self.logs.add(app_id, log_type, message)

    def get_logs(self, app_id: str) -> List[LogEvent]:
        return self.logs.get(app_id)

    def clear_logs(self, app_id: str) -> OperationResult:
        self.logs.clear(app_id)
        return OperationResult.ok()

    def add_log_listener(self, callback: Callable[[LogEvent], None]) -> None:
        self.logs.add_listener(callback)

    def remove_log_listener(self, callback: Callable[[LogEvent], None]) -> None:
        self.logs.remove_listener(callback)

    # Tracking

    def is_tracked(self, app_id: str) -> bool:
        with self._lock:
            return app_id in self._processes

    def running_apps(self) -> List[str]:
        with self._lock:
            tracked = list(self._processes.values())
        return [p.app_id for p in tracked if p.is_alive()]

    def get_process(self, app_id: str) -> Optional[RunningProcess]:
        with self._lock:
            return self._processes.get(app_id)

    def _resolve_exec_path(self, app_id: str, exec_path: Optional[Union[str, Path]]) -> Path:
        if exec_path:
            return Path(exec_path)
        with self._lock:
            running = self._processes.get(app_id)
        if running:
            return running.exec_path
        row = self.registry.get(app_id)
        if row is None or not row.exec_path:
            raise UnknownAppError(app_id)
        return Path(row.exec_path)

    @handle_errors(DevStackError, log_level=logging.WARNING, message="Failed to update auto_start")
    def _set_auto_start(self, app_id: str, enabled: bool) -> None:
        self.registry.set_auto_start(app_id, enabled)

    def output_path(self, app_id: str) -> Path:
        """Where a detached service's stdout and stderr go."""
        return self.config.logs_dir / f"{app_id}.out.log"

    # Start

    @returns_result
    def start(
        self,
        app_id: str,
        exec_path: Optional[Union[str, Path]] = None,
        args: Optional[str] = None,
        detach: bool = False,
    ) -> OperationResult:
        """
        Start a service.

        Args:
            app_id: Installed app id
            exec_path: Executable (default: from the registry)
            args: Argument string (default: the app's stored custom_args)
            detach: Run in a new session with output sent to output_path(app_id)

        Returns:
            OperationResult with pid (and output for a detached start).
            Failures carry recent_logs.
        """
        with self._lock:
            existing = self._processes.get(app_id)
            if existing is not None:
                if existing.is_alive():
                    raise ServiceAlreadyRunningError(app_id, existing.pid)
                logger.warning(
                    f"Found stale process for {app_id} (PID: {existing.pid}), cleaning up"
                )
                del self._processes[app_id]
            if app_id in self._starting:
                raise ServiceAlreadyRunningError(app_id, 0)
            self._starting.add(app_id)

        try:
            return self._start(app_id, self._resolve_exec_path(app_id, exec_path), args, detach)
        finally:
            with self._lock:
                self._starting.discard(app_id)

    def _start(self, app_id: str, exec_path: Path, args: Optional[str], detach: bool) -> OperationResult:
        if args is None:
            row = self.registry.get(app_id)
            args = (row.custom_args if row else None) or ""

        family = get_family(app_id)
        try:
            family.ensure_runtime_dirs(exec_path)
        except OSError as e:
            raise FilesystemError(str(exec_path.parent), str(e), cause=e)

        if family.needs_data_init(exec_path):
            self._log(app_id, LogType.INFO, "Initializing data directory...")
            family.initialize_data_dir(app_id, exec_path, self.templates)

        cmd = [str(exec_path)] + parse_args(family.start_args(exec_path, args))

        self.logs.clear(app_id)
        self._log(app_id, LogType.INFO, f"Starting {app_id}...")
        self._log(app_id, LogType.INFO, f"Command: {' '.join(cmd)}")
        logger.info(f"Starting: {' '.join(cmd)} in {exec_path.parent}")

        output_path = self.output_path(app_id) if detach else None
        try:
            if output_path is not None:
                process = self._spawn_detached(cmd, exec_path, output_path)
                self._log(app_id, LogType.INFO, f"Output: {output_path}")
            else:
                process = subprocess.Popen(
                    cmd,
                    cwd=exec_path.parent,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                )
        except OSError as e:
            self._log(app_id, LogType.ERROR, f"Process error: {e}")
            raise ServiceStartError(app_id, str(e), self.logs.tail(app_id, RECENT_LOG_LINES))

        running = RunningProcess(
            app_id=app_id, process=process, exec_path=exec_path, output_path=output_path
        )
        with self._lock:
            self._processes[app_id] = running
        self._watch(running)
        logger.info(f"Started service: {app_id} (PID: {process.pid})")

        time.sleep(self.config.start_grace_period)

        code = process.poll()
        if code is not None:
            logger.error(f"Service {app_id} failed to start (exited with {code})")
            raise ServiceStartError(
                app_id,
                f"Service exited immediately with code {code}. Check logs.",
                self._recent_output(running),
            )

        self._set_auto_start(app_id, True)
        if output_path is not None:
            return OperationResult.ok(pid=process.pid, output=str(output_path))
        return OperationResult.ok(pid=process.pid)

    @staticmethod
    def _spawn_detached(cmd: List[str], exec_path: Path, output_path: Path) -> subprocess.Popen:
        output_path.parent.mkdir(parents=True, exist_ok=True)
        with open(output_path, "wb") as output:
            return subprocess.Popen(
                cmd,
                cwd=exec_path.parent,
                stdin=subprocess.DEVNULL,
                stdout=output,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )

    def _recent_output(self, running: RunningProcess) -> List[str]:
        if running.output_path is None:
            # Let the readers drain what the process printed before dying
            for thread in running.threads[:2]:
                thread.join(timeout=READER_JOIN_TIMEOUT)
            return self.logs.tail(running.app_id, RECENT_LOG_LINES)

        try:
            text = read_tail(running.output_path)
        except FilesystemError as e:
            logger.warning(f"Could not read {running.output_path}: {e}")
            return []
        return [line for line in text.splitlines() if line.strip()][-RECENT_LOG_LINES:]

    def _watch(self, running: RunningProcess) -> None:
        process = running.process
        if running.detached:
            waiter = threading.Thread(
                target=self._wait_exit,
                args=(running, []),
                name=f"{running.app_id}-waiter",
                daemon=True,
            )
            running.threads = [waiter]
            waiter.start()
            return

        readers = [
            threading.Thread(
                target=self._pump,
                args=(running.app_id, process.stdout, LogType.STDOUT),
                name=f"{running.app_id}-stdout",
                daemon=True,
            ),
            threading.Thread(
                target=self._pump,
                args=(running.app_id, process.stderr, LogType.STDERR),
                name=f"{running.app_id}-stderr",
                daemon=True,
            ),
        ]
        waiter = threading.Thread(
            target=self._wait_exit,
            args=(running, readers),
            name=f"{running.app_id}-waiter",
            daemon=True,
        )
        running.threads = readers + [waiter]
        for thread in running.threads:
            thread.start()

    def _pump(self, app_id: str, stream, log_type: LogType) -> None:
        with stream:
            for raw in iter(stream.readline, b""):
                line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
                if line.strip():
                    self._log(app_id, log_type, line)

    def _wait_exit(self, running: RunningProcess, readers: List[threading.Thread]) -> None:
        code = running.process.wait()
        for thread in readers:
            thread.join(timeout=READER_JOIN_TIMEOUT)

        logger.info(f"Service {running.app_id} exited with code {code}")
        self._log(running.app_id, LogType.INFO, f"Process exited with code {code}")

        with self._lock:
            if self._processes.get(running.app_id) is running:
                del self._processes[running.app_id]

    # Stop

    @returns_result
    def stop(
        self,
        app_id: str,
        exec_path: Optional[Union[str, Path]] = None,
        stop_args: Optional[str] = None,
    ) -> OperationResult:
        """
        Stop a service.

        With stop_args the vendor stop command is run and given stop_timeout
        seconds; a timeout counts as stopped. Otherwise the tracked process
        tree is killed and a sweep by executable name catches instances left
        over from earlier sessions.
        """
        self._set_auto_start(app_id, False)
        exec_path = self._resolve_exec_path(app_id, exec_path)

        with self._lock:
            running = self._processes.pop(app_id, None)

        if stop_args:
            return self._stop_with_command(app_id, exec_path, stop_args)

        killed = False
        if running is not None:
            killed = terminate_tree(running.pid, timeout=self.config.kill_timeout)
            if running.process.poll() is None:
                running.process.kill()
            logger.info(f"Killed service: {app_id} (PID: {running.pid})")

        swept = kill_by_name(exec_path, timeout=self.config.kill_timeout)

        if not killed and not swept and running is None:
            return OperationResult.fail(ServiceStopError(app_id, "Process not found"))

        return OperationResult.ok()

    def _stop_with_command(self, app_id: str, exec_path: Path, stop_args: str) -> OperationResult:
        cmd = [str(exec_path)] + stop_args.split()
        logger.info(f"Stopping {app_id}: {' '.join(cmd)}")
        try:
            subprocess.run(
                cmd,
                cwd=exec_path.parent,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                timeout=self.config.stop_timeout,
            )
        except subprocess.TimeoutExpired:
            logger.warning(f"Stop command timed out for {app_id}, forcing cleanup")
        except OSError as e:
            logger.error(f"Stop command failed for {app_id}: {e}")
            raise ServiceStopError(app_id, str(e))

        logger.info(f"Stopped service: {app_id}")
        return OperationResult.ok()

    # Restart and status

    @returns_result
    def restart(
        self,
        app_id: str,
        exec_path: Optional[Union[str, Path]] = None,
        start_args: Optional[str] = None,
        stop_args: Optional[str] = None,
        detach: bool = False,
    ) -> OperationResult:
        """Stop if running, wait for ports to be released, start again."""
        logger.info(f"Restarting service: {app_id}")
        exec_path = self._resolve_exec_path(app_id, exec_path)

        # A detached instance from another session is only known by name
        if self.is_tracked(app_id) or is_running_by_name(exec_path):
            self.stop(app_id, exec_path, stop_args)
            time.sleep(self.config.restart_delay)

        if start_args is None:
            row = self.registry.get(app_id)
            start_args = (row.custom_args if row else None) or ""

        return self.start(app_id, exec_path, start_args, detach=detach)

    @returns_result
    def status(self, app_id: str, exec_path: Optional[Union[str, Path]] = None) -> OperationResult:
        """Whether any process with the executable's name is running."""
        exec_path = self._resolve_exec_path(app_id, exec_path)
        return OperationResult.ok(running=is_running_by_name(exec_path))

    # Boot and teardown

    def recover_autostart(self) -> Dict[str, OperationResult]:
        """
        Start every app flagged auto_start, one after another.

        A failure is logged and the remaining apps are still attempted.
        """
        apps = self.registry.auto_start_apps()
        if not apps:
            return {}

        logger.info(f"Auto-starting {len(apps)} services")
        time.sleep(self.config.autostart_delay)

        results: Dict[str, OperationResult] = {}
        for index, app in enumerate(apps):
            if index:
                time.sleep(self.config.autostart_stagger)

            if not app.exec_path:
                logger.warning(f"Auto-start skipped for {app.app_id}: no executable")
                results[app.app_id] = OperationResult.fail(UnknownAppError(app.app_id))
                continue

            result = self.start(app.app_id, app.exec_path, app.custom_args or "")
            if result:
                logger.info(f"Auto-started {app.app_id}")
            else:
                logger.error(f"Failed to auto-start {app.app_id}: {result.error}")
            results[app.app_id] = result

        return results

    def shutdown(self) -> None:
        """
        Stop every attached process; auto_start flags are left as they are.

        Detached processes keep running and are only forgotten.
        """
        with self._lock:
            tracked = [p for p in self._processes.values() if not p.detached]
            for running in self._processes.values():
                if running.detached:
                    logger.info(f"Leaving {running.app_id} running (PID: {running.pid})")
            self._processes.clear()

        for running in tracked:
            logger.info(f"Stopping {running.app_id} (PID: {running.pid})")
            terminate_tree(running.pid, timeout=self.config.kill_timeout)
            if running.process.poll() is None:
                running.process.kill()

        for running in tracked:
            for thread in running.threads:
                thread.join(timeout=READER_JOIN_TIMEOUT)
