"""
Tests for the devstack command line.

Commands run against a real DevStack in a temporary data directory;
get_stack is patched so no user config is read.
"""

import argparse
import json
import logging
import os
import subprocess
import sys
from unittest.mock import patch

import pytest

from common.config import DevStackConfig
from common.exceptions import InvalidConfigError
from common.result import OperationResult
from conftest import SRC_DIR, wait_for
from orchestrator import cli
from orchestrator.app import DevStack
from store.registry import InstallRegistry, InstalledApp


@pytest.fixture
def stack(config, mock_session):
    s = DevStack(config=config, session=mock_session, hosts_editor=object())
    with patch("orchestrator.cli.get_stack", return_value=s):
        yield s
    s.close()


def install_row(stack, app_id, version="1.0.0"):
    exec_path = stack.config.apps_dir / app_id / f"{app_id}.exe"
    stack.registry.upsert(InstalledApp(app_id, version, str(exec_path.parent), str(exec_path)))
    return exec_path


@pytest.mark.unit
class TestReport:

    def test_success(self, capsys):
        result = OperationResult.ok(warnings=["php.ini missing"])

        assert cli.report(result, "Installed php8.3") == 0

        out, err = capsys.readouterr()
        assert out == "Installed php8.3\n"
        assert "Warning: php.ini missing" in err

    def test_failure_with_recent_logs(self, capsys):
        result = OperationResult.fail("Service exited", recent_logs=["bind() failed"])

        assert cli.report(result) == 1

        err = capsys.readouterr().err
        assert "Error: Service exited" in err
        assert "  | bind() failed" in err

    def test_cancelled(self, capsys):
        assert cli.report(OperationResult.cancelled_result("nginx")) == 1
        assert "Cancelled." in capsys.readouterr().err


@pytest.mark.unit
class TestCommands:

    def test_list_installed(self, stack, capsys):
        install_row(stack, "redis", "8.2.2")

        assert cli.cmd_list(argparse.Namespace(all=False, json=False)) == 0

        out = capsys.readouterr().out
        assert "redis" in out and "8.2.2" in out
        assert "nginx" not in out

    def test_list_json_all(self, stack, capsys):
        assert cli.cmd_list(argparse.Namespace(all=True, json=True)) == 0

        apps = json.loads(capsys.readouterr().out)
        assert {a["id"] for a in apps} >= {"nginx", "redis"}
        assert all(a["status"] == "not_installed" for a in apps)

    def test_list_empty(self, stack, capsys):
        cli.cmd_list(argparse.Namespace(all=False, json=False))
        assert "No apps installed." in capsys.readouterr().out

    def test_catalog_info(self, stack, capsys):
        assert cli.cmd_catalog_info(argparse.Namespace(app_id="nginx")) == 0

        out = capsys.readouterr().out
        assert "Name:        Nginx" in out
        assert "Installed:   No" in out
        assert "nginx-1.28.1.zip" in out

    def test_catalog_info_unknown(self, stack, capsys):
        assert cli.cmd_catalog_info(argparse.Namespace(app_id="ghost")) == 1
        assert "App not found: ghost" in capsys.readouterr().err

    def test_catalog_list_filters(self, stack, capsys):
        assert cli.cmd_catalog_list(argparse.Namespace(query="", category="database")) == 0

        out = capsys.readouterr().out
        assert "mysql" in out and "postgresql" in out
        assert "nginx" not in out

    def test_uninstall_unknown(self, stack, capsys):
        assert cli.cmd_uninstall(argparse.Namespace(app_id="nginx")) == 1
        assert "Error: App 'nginx' not found" in capsys.readouterr().err

    def test_status(self, stack, capsys):
        install_row(stack, "redis")

        with patch("services.supervisor.is_running_by_name", return_value=True):
            assert cli.cmd_status(argparse.Namespace(app_id=None)) == 0

        assert "redis" in capsys.readouterr().out

    def test_logs_listing(self, stack, capsys):
        exec_path = install_row(stack, "redis")
        (exec_path.parent / "logs").mkdir(parents=True)
        (exec_path.parent / "logs" / "redis.log").write_text("ready\n")

        args = argparse.Namespace(app_id="redis", file=None, clear=None)
        assert cli.cmd_logs(args) == 0
        assert "redis.log" in capsys.readouterr().out

        args = argparse.Namespace(app_id="redis", file="redis.log", clear=None)
        assert cli.cmd_logs(args) == 0
        assert capsys.readouterr().out == "ready\n"

    def test_default_version_show(self, stack, capsys):
        args = argparse.Namespace(value=None, setting="default_php_version")
        assert cli.cmd_default_version(args) == 0
        assert "default_php_version: (unset)" in capsys.readouterr().out

    @pytest.mark.parametrize("wait,detach", [(False, True), (True, False)])
    def test_start_detaches_unless_waiting(self, stack, capsys, wait, detach):
        started = OperationResult.ok(pid=4300, output="/data/logs/redis.out.log")

        with patch.object(stack, "start_service", return_value=started) as start, \
             patch("orchestrator.cli._supervise", return_value=0) as supervise:
            assert cli.cmd_start(argparse.Namespace(app_id="redis", args=None, wait=wait)) == 0

        start.assert_called_once_with("redis", None, detach=detach)
        assert supervise.called is wait
        out = capsys.readouterr().out
        assert "Started redis (PID 4300)" in out
        assert "Output: /data/logs/redis.out.log" in out

    def test_restart_detaches(self, stack):
        restarted = OperationResult.ok(pid=4301)

        with patch.object(stack, "restart_service", return_value=restarted) as restart:
            assert cli.cmd_restart(argparse.Namespace(app_id="redis", args="-p 6380", wait=False)) == 0

        restart.assert_called_once_with("redis", "-p 6380", detach=True)


CHATTY = (
    "import sys, time\n"
    "for i in range(30):\n"
    "    print('tick', i, flush=True)\n"
    "    time.sleep(0.1)\n"
    "with open(sys.argv[1], 'w') as f:\n"
    "    f.write('done')\n"
)


@pytest.mark.integration
class TestDetachedService:

    def test_service_outlives_cli(self, tmp_path):
        config = DevStackConfig(data_dir=tmp_path / "data")
        config.ensure_dirs()
        bin_dir = tmp_path / "bin"
        bin_dir.mkdir()
        exe = bin_dir / f"chatty{os.getpid() % 100000}"
        os.symlink(sys.executable, exe)
        script = tmp_path / "chatty.py"
        script.write_text(CHATTY)
        marker = tmp_path / "done.txt"
        InstallRegistry(config.db_path).upsert(InstalledApp(
            "chatty", "1.0.0", str(bin_dir), str(exe), custom_args=f'"{script}" "{marker}"',
        ))

        env = dict(os.environ, HOME=str(tmp_path), PYTHONPATH=str(SRC_DIR))
        env.pop("DEVSTACK_HOME", None)
        cli_run = subprocess.run(
            [sys.executable, "-m", "orchestrator", "--data-dir", str(config.data_dir), "start", "chatty"],
            cwd=tmp_path,
            env=env,
            capture_output=True,
            text=True,
            timeout=30,
        )

        assert cli_run.returncode == 0, cli_run.stderr
        assert "Started chatty" in cli_run.stdout
        # The CLI is gone; the service keeps writing until it finishes on its own
        assert wait_for(marker.exists, timeout=10)
        assert "tick 29" in (config.logs_dir / "chatty.out.log").read_text()
        assert InstallRegistry(config.db_path).get("chatty").auto_start is True


@pytest.mark.unit
class TestGetStack:

    def test_data_dir_override(self, tmp_path):
        args = argparse.Namespace(config=None, data_dir=str(tmp_path / "alt"), log_level=logging.WARNING)

        with patch("orchestrator.cli.DevStackConfig.load", return_value=DevStackConfig(data_dir=tmp_path)), \
             patch("orchestrator.cli.setup_logging") as setup, \
             patch("orchestrator.cli.DevStack") as stack_cls:
            cli.get_stack(args)

        config = stack_cls.call_args[0][0]
        assert config.data_dir == tmp_path / "alt"
        assert setup.call_args[1]["log_dir"] == config.logs_dir

    def test_invalid_config_exits(self, tmp_path, capsys):
        args = argparse.Namespace(config=str(tmp_path / "c.json"), data_dir=None, log_level=logging.WARNING)
        error = InvalidConfigError("config_file", "c.json", "bad json")

        with patch("orchestrator.cli.DevStackConfig.load", side_effect=error):
            with pytest.raises(SystemExit) as exc_info:
                cli.get_stack(args)

        assert exc_info.value.code == 1
        assert "Invalid configuration" in capsys.readouterr().err


@pytest.mark.unit
class TestMain:

    def test_no_command_prints_help(self, capsys):
        with patch.object(sys, "argv", ["devstack"]), patch("orchestrator.cli.setup_logging"):
            assert cli.main() == 1
        assert "usage: devstack" in capsys.readouterr().out

    def test_no_cancel_command(self, capsys):
        # Installs live in the process running them; Ctrl+C cancels instead
        with patch.object(sys, "argv", ["devstack", "cancel", "nginx"]), \
             patch("orchestrator.cli.setup_logging"):
            with pytest.raises(SystemExit) as exc_info:
                cli.main()

        assert exc_info.value.code == 2
        assert "invalid choice: 'cancel'" in capsys.readouterr().err

    def test_dispatch(self, stack, capsys):
        with patch.object(sys, "argv", ["devstack", "-v", "list", "--all"]), \
             patch("orchestrator.cli.setup_logging") as setup:
            assert cli.main() == 0

        setup.assert_called_once_with(level=logging.DEBUG)
        assert "nginx" in capsys.readouterr().out
