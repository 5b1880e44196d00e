"""
Tests for the common module (errors, results, decorators, logging, config).
"""

import json
import logging
import time

import pytest


class TestExceptions:
    """Tests for exception hierarchy."""

    def test_devstack_error_basic(self):
        """Test basic DevStackError."""
        from common.exceptions import DevStackError

        error = DevStackError("Something failed")
        assert str(error) == "[DevStackError] Something failed"
        assert error.recoverable is True

    def test_devstack_error_with_details(self):
        from common.exceptions import DevStackError

        error = DevStackError(
            "Operation failed",
            code="OP_FAILED",
            details={"field": "value"},
            recoverable=False,
        )

        assert error.code == "OP_FAILED"
        assert error.details == {"field": "value"}
        assert error.recoverable is False
        assert "details:" in str(error)

    def test_devstack_error_to_dict(self):
        """Test JSON serialization."""
        from common.exceptions import DevStackError

        error = DevStackError("Test", code="TEST", details={"key": 1})
        d = error.to_dict()

        assert d["error"] == "TEST"
        assert d["message"] == "Test"
        assert d["details"]["key"] == 1

    def test_group_conflict_message(self):
        from common.exceptions import GroupConflictError, ValidationError

        error = GroupConflictError("mariadb", "mysql", "mysql", "MySQL")
        assert isinstance(error, ValidationError)
        assert error.message == (
            "Cannot install: MySQL is already installed. Only one mysql can be installed at a time."
        )
        assert error.details["conflict"] == "mysql"

    def test_checksum_error_is_archive_error(self):
        from common.exceptions import ArchiveError, ChecksumError

        error = ChecksumError("nginx.zip", "sha1", "aa", "bb")
        assert isinstance(error, ArchiveError)
        assert error.code == "CHECKSUM_MISMATCH"
        assert error.recoverable is False

    def test_install_cancelled_is_not_an_error(self):
        from common.exceptions import DevStackError, InstallCancelled

        assert not issubclass(InstallCancelled, DevStackError)


class TestOperationResult:

    def test_ok_carries_data_and_warnings(self):
        from common.result import OperationResult

        result = OperationResult.ok(warnings=["careful"], pid=42)
        assert result
        assert result["pid"] == 42
        assert result.get("missing", "x") == "x"
        assert result.to_dict() == {"success": True, "pid": 42, "warnings": ["careful"]}

    def test_fail_from_devstack_error(self):
        from common.exceptions import ServiceStartError
        from common.result import OperationResult

        result = OperationResult.fail(ServiceStartError("redis", "boom", ["line 1"]))
        assert not result
        assert result.code == "SERVICE_START_FAILED"
        assert result.details["recent_logs"] == ["line 1"]
        assert "boom" in result.error

    def test_fail_from_string(self):
        from common.result import OperationResult

        result = OperationResult.fail("No active installation found", app_id="nginx")
        assert result.error == "No active installation found"
        assert result.code is None
        assert result.details == {"app_id": "nginx"}

    def test_cancelled_result(self):
        from common.result import OperationResult

        result = OperationResult.cancelled_result("nginx")
        assert not result
        assert result.cancelled is True
        assert result.to_dict()["cancelled"] is True


class TestDecorators:
    """Tests for error handling decorators."""

    def test_handle_errors_returns_default(self):
        """Test @handle_errors returns default on exception."""
        from common.decorators import handle_errors

        @handle_errors(ValueError, default="fallback")
        def failing_func():
            raise ValueError("test error")

        result = failing_func()
        assert result == "fallback"

    def test_handle_errors_reraise(self):
        from common.decorators import handle_errors

        @handle_errors(ValueError, reraise=True)
        def failing_func():
            raise ValueError("test")

        with pytest.raises(ValueError):
            failing_func()

    def test_returns_result_converts_devstack_error(self):
        from common.decorators import returns_result
        from common.exceptions import UnknownAppError

        @returns_result
        def lookup():
            raise UnknownAppError("nope")

        result = lookup()
        assert not result
        assert result.code == "UNKNOWN_APP"

    def test_returns_result_converts_unexpected_error(self):
        from common.decorators import returns_result

        @returns_result
        def broken():
            raise RuntimeError("kaput")

        result = broken()
        assert not result
        assert result.error == "kaput"

    def test_retry_succeeds_eventually(self):
        """Test @retry succeeds after failures."""
        from common.decorators import retry

        attempt_count = 0

        @retry(max_attempts=3, delay=0.01)
        def flaky_func():
            nonlocal attempt_count
            attempt_count += 1
            if attempt_count < 3:
                raise ConnectionError("not yet")
            return "success"

        result = flaky_func()
        assert result == "success"
        assert attempt_count == 3

    def test_retry_exhausts_attempts(self):
        """Test @retry raises after exhausting attempts."""
        from common.decorators import retry

        @retry(max_attempts=2, delay=0.01)
        def always_fails():
            raise ConnectionError("always fails")

        with pytest.raises(ConnectionError):
            always_fails()

    def test_timed_decorator(self, caplog):
        """Test @timed logs execution time."""
        from common.decorators import timed

        @timed
        def slow_func():
            time.sleep(0.05)
            return "done"

        with caplog.at_level(logging.DEBUG):
            result = slow_func()

        assert result == "done"
        assert "slow_func completed" in caplog.text


class TestLogging:
    """Tests for logging configuration."""

    def test_setup_logging_creates_handlers(self):
        from common.logging_config import setup_logging

        setup_logging(level=logging.DEBUG)

        root = logging.getLogger()
        assert len(root.handlers) >= 1
        assert logging.getLogger("urllib3").level == logging.WARNING

    def test_setup_logging_writes_json_file(self, tmp_path):
        from common.logging_config import LOG_FILE_NAME, LogContext, setup_logging

        setup_logging(level=logging.INFO, log_dir=tmp_path, json_logs=True)
        with LogContext(app_id="nginx", operation="install"):
            logging.getLogger("devstack.test").info("hello")

        for handler in logging.getLogger().handlers:
            handler.flush()

        lines = (tmp_path / LOG_FILE_NAME).read_text().strip().splitlines()
        record = json.loads(lines[-1])
        assert record["message"] == "hello"
        assert record["data"] == {"app_id": "nginx", "operation": "install"}

        setup_logging(level=logging.WARNING)


class TestConfig:

    def test_defaults_use_devstack_home(self, temp_home):
        from common.config import DevStackConfig

        config = DevStackConfig()
        assert config.data_dir == temp_home / "devstack"
        assert config.db_path.name == "dev-env.db"
        assert config.catalog_path == config.data_dir / "data" / "apps.json"
        assert config.log_buffer_size == 100

    def test_load_missing_file_gives_defaults(self, tmp_path):
        from common.config import DevStackConfig

        config = DevStackConfig.load(tmp_path / "missing.json")
        assert config.refresh_timeout == 15.0

    def test_load_ignores_unknown_keys(self, tmp_path):
        from common.config import DevStackConfig

        path = tmp_path / "config.json"
        path.write_text(json.dumps({"stop_timeout": 2, "theme": "dark"}))

        config = DevStackConfig.load(path)
        assert config.stop_timeout == 2

    def test_invalid_values_raise(self, tmp_path):
        from common.config import DevStackConfig
        from common.exceptions import InvalidConfigError

        with pytest.raises(InvalidConfigError):
            DevStackConfig(data_dir=tmp_path, download_timeout=0)

        path = tmp_path / "config.json"
        path.write_text("{not json")
        with pytest.raises(InvalidConfigError):
            DevStackConfig.load(path)

    def test_save_round_trips(self, tmp_path):
        from common.config import DevStackConfig

        path = tmp_path / "config.json"
        DevStackConfig(data_dir=tmp_path / "data", log_buffer_size=50).save(path)

        loaded = DevStackConfig.load(path)
        assert loaded.log_buffer_size == 50
        assert loaded.data_dir == tmp_path / "data"


class TestFsOps:

    def test_atomic_write_json(self, tmp_path):
        from utils.fs_ops import atomic_write_json

        target = tmp_path / "nested" / "doc.json"
        atomic_write_json(target, {"a": 1})

        assert json.loads(target.read_text()) == {"a": 1}
        assert [p.name for p in target.parent.iterdir()] == ["doc.json"]

    def test_iter_files_is_sorted_depth_first(self, tmp_path):
        from utils.fs_ops import iter_files

        for rel in ("b.txt", "a/z.txt", "a/b/y.txt", "c/x.txt"):
            path = tmp_path / rel
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text("")

        found = [p.relative_to(tmp_path).as_posix() for p in iter_files(tmp_path)]
        assert found == ["a/b/y.txt", "a/z.txt", "b.txt", "c/x.txt"]

    def test_remove_tree_missing_is_fine(self, tmp_path):
        from utils.fs_ops import remove_tree

        assert remove_tree(tmp_path / "nothing") is True
        assert remove_tree(None) is True

    def test_remove_tree_removes(self, tmp_path):
        from utils.fs_ops import remove_tree

        (tmp_path / "app" / "bin").mkdir(parents=True)
        (tmp_path / "app" / "bin" / "x.exe").write_text("")

        assert remove_tree(tmp_path / "app") is True
        assert not (tmp_path / "app").exists()
