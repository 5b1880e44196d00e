"""
App Families - Per-family install and runtime capabilities.

Every app id maps to exactly one family, chosen once by exact id or prefix.
A family knows how to configure a fresh install, which runtime directories
its server needs, whether a data directory must be initialized before the
first start, and how to adjust start arguments.
"""

from __future__ import annotations

import logging
import re
import secrets
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple

from common.config import DevStackConfig
from common.exceptions import DataInitError
from utils.fs_ops import atomic_write_text, to_forward_slashes

from .registry import InstallRegistry
from .templates import TemplateLoader, get_template_loader
from .versioning import short_version

logger = logging.getLogger(__name__)

DEFAULT_PHP_VERSION = "default_php_version"
DEFAULT_PHP_PORT = "9000"
PHP_PORT_RE = re.compile(r"-b\s+[\d\.]+:(\d+)")

NGINX_TEMP_DIRS = (
    "temp/client_body_temp",
    "temp/proxy_temp",
    "temp/fastcgi_temp",
    "temp/uwsgi_temp",
    "temp/scgi_temp",
)

DATA_INIT_TIMEOUT = 300


@dataclass
class FamilyContext:
    """Everything a configuration hook may touch."""
    app_id: str
    install_dir: Path
    exec_path: Optional[Path]
    config: DevStackConfig
    registry: InstallRegistry
    templates: TemplateLoader

    @property
    def exec_dir(self) -> Optional[Path]:
        return self.exec_path.parent if self.exec_path else None


def _run_init(app_id: str, cmd: List[str], cwd: Path) -> None:
    logger.info(f"Running initialization: {' '.join(cmd)}")
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=DATA_INIT_TIMEOUT,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        raise DataInitError(app_id, str(e), cause=e)

    if result.returncode != 0:
        output = (result.stderr or result.stdout or "").strip()
        raise DataInitError(app_id, f"exit code {result.returncode}: {output[-500:]}")


class AppFamily:
    """
    Default capabilities; subclasses override what their apps need.

    Attributes:
        name: Family name
        ids: App ids belonging to the family
        prefix: App id prefix belonging to the family
        runtime_dirs: Directories, relative to the executable, made before start
        default_version_setting: Settings key naming the family's default version
        depends_on: Settings keys whose change requires reconfiguration
        owns_vhosts: Uninstall must purge virtual-host state
        web_server: Restarted when dependent config changes
    """

    name = "generic"
    ids: Tuple[str, ...] = ()
    prefix: Optional[str] = None
    runtime_dirs: Tuple[str, ...] = ("logs",)
    default_version_setting: Optional[str] = None
    depends_on: Tuple[str, ...] = ()
    owns_vhosts = False
    web_server = False

    def matches(self, app_id: str) -> bool:
        if app_id in self.ids:
            return True
        return bool(self.prefix) and app_id.startswith(self.prefix)

    def post_install(self, ctx: FamilyContext) -> bool:
        """
        Configure a fresh install.

        Returns:
            True when web server config changed and running servers
            should be restarted.
        """
        return False

    def reconfigure(self, ctx: FamilyContext) -> bool:
        """Regenerate config after something this family depends on changed."""
        return False

    def data_dir(self, exec_path: Path) -> Optional[Path]:
        return None

    def needs_data_init(self, exec_path: Path) -> bool:
        data_dir = self.data_dir(exec_path)
        return data_dir is not None and not data_dir.exists()

    def initialize_data_dir(self, app_id: str, exec_path: Path, templates: TemplateLoader) -> None:
        """One-time data directory setup; raises DataInitError."""

    def start_args(self, exec_path: Path, args: str) -> str:
        return args

    def default_version_value(self, app_id: str) -> Optional[str]:
        return None

    def ensure_runtime_dirs(self, exec_path: Path) -> None:
        exec_dir = exec_path.parent
        for rel in self.runtime_dirs:
            (exec_dir / rel).mkdir(parents=True, exist_ok=True)


class NginxFamily(AppFamily):
    name = "nginx"
    ids = ("nginx",)
    runtime_dirs = ("logs",) + NGINX_TEMP_DIRS
    owns_vhosts = True
    web_server = True

    def post_install(self, ctx: FamilyContext) -> bool:
        server_root = ctx.exec_dir
        config = ctx.config
        static_dir = config.static_dir / "nginx"
        for path in (config.htdocs_dir, config.sites_dir, static_dir, server_root / "conf"):
            path.mkdir(parents=True, exist_ok=True)

        content = ctx.templates.render(
            "nginx.conf.j2",
            listen_port=80,
            htdocs_path=to_forward_slashes(config.htdocs_dir),
            sites_include=to_forward_slashes(config.sites_dir / "*.conf"),
            static_include=to_forward_slashes(static_dir / "*.conf"),
        )
        target = server_root / "conf" / "nginx.conf"
        atomic_write_text(target, content)
        logger.info(f"Nginx configuration updated at {target}")
        return False


class ApacheFamily(AppFamily):
    name = "apache"
    ids = ("apache",)
    owns_vhosts = True
    web_server = True

    def post_install(self, ctx: FamilyContext) -> bool:
        # Executable lives in <server root>/bin
        server_root = ctx.exec_dir.parent
        config = ctx.config
        static_dir = config.static_dir / "apache"
        cgi_bin = server_root / "cgi-bin"
        for path in (
            config.htdocs_dir, config.sites_dir, static_dir,
            cgi_bin, server_root / "logs", server_root / "conf",
        ):
            path.mkdir(parents=True, exist_ok=True)

        content = ctx.templates.render(
            "httpd.conf.j2",
            listen_port=80,
            server_root=to_forward_slashes(server_root),
            htdocs_path=to_forward_slashes(config.htdocs_dir),
            cgi_bin_path=to_forward_slashes(cgi_bin),
            sites_include=to_forward_slashes(config.sites_dir / "*.conf"),
            static_include=to_forward_slashes(static_dir / "*.conf"),
        )
        target = server_root / "conf" / "httpd.conf"
        atomic_write_text(target, content)
        logger.info(f"Apache configuration updated at {target}")
        return False


class PhpFamily(AppFamily):
    name = "php"
    prefix = "php"
    default_version_setting = DEFAULT_PHP_VERSION

    def matches(self, app_id: str) -> bool:
        # phpmyadmin is its own family
        return super().matches(app_id) and app_id != "phpmyadmin"

    def post_install(self, ctx: FamilyContext) -> bool:
        exec_dir = ctx.exec_dir
        dev_config = exec_dir / "php.ini-development"
        if dev_config.exists():
            shutil.copyfile(dev_config, exec_dir / "php.ini")
            logger.info(f"Created php.ini for {ctx.app_id}")
        else:
            logger.warning(f"No php.ini-development in {exec_dir}")
        return False

    def default_version_value(self, app_id: str) -> Optional[str]:
        return app_id[len(self.prefix):] or None


class PhpMyAdminFamily(AppFamily):
    name = "phpmyadmin"
    ids = ("phpmyadmin",)
    runtime_dirs = ()
    depends_on = (DEFAULT_PHP_VERSION,)

    def post_install(self, ctx: FamilyContext) -> bool:
        return self.reconfigure(ctx)

    def php_port(self, registry: InstallRegistry, php_app_id: str) -> str:
        """FastCGI port from the PHP app's -b argument, 9000 when absent."""
        php = registry.get(php_app_id)
        if php and php.custom_args:
            match = PHP_PORT_RE.search(php.custom_args)
            if match:
                return match.group(1)
        return DEFAULT_PHP_PORT

    def reconfigure(self, ctx: FamilyContext) -> bool:
        if not ctx.exec_path:
            return False

        php_version = ctx.registry.get_setting(DEFAULT_PHP_VERSION)
        if not php_version:
            logger.warning("No default PHP version set, skipping phpMyAdmin config")
            return False

        short = short_version(php_version)
        if not short:
            logger.warning(f"Could not determine default PHP version from {php_version!r}")
            return False

        port = self.php_port(ctx.registry, f"php{short}")
        root = to_forward_slashes(ctx.exec_dir)
        static_dir = ctx.config.static_dir

        atomic_write_text(
            static_dir / "nginx" / "phpmyadmin.conf",
            ctx.templates.render("phpmyadmin_nginx.conf.j2", root=root, php_port=port),
        )
        atomic_write_text(
            static_dir / "apache" / "phpmyadmin.conf",
            ctx.templates.render("phpmyadmin_apache.conf.j2", root=root, php_port=port),
        )
        logger.info(f"phpMyAdmin web config written (PHP {short} :{port})")

        sample = ctx.exec_dir / "config.sample.inc.php"
        if sample.exists():
            content = sample.read_text(encoding="utf-8")
            content = content.replace(
                "$cfg['blowfish_secret'] = '';",
                f"$cfg['blowfish_secret'] = '{secrets.token_hex(32)}';",
            )
            content = content.replace(
                "$cfg['Servers'][$i]['AllowNoPassword'] = false;",
                "$cfg['Servers'][$i]['AllowNoPassword'] = true;",
            )
            atomic_write_text(ctx.exec_dir / "config.inc.php", content)
            logger.info("phpMyAdmin config.inc.php updated")
        else:
            logger.warning(f"No config.sample.inc.php in {ctx.exec_dir}")

        return True


class MySqlFamily(AppFamily):
    """MySQL and MariaDB share the server layout and init utility."""
    name = "mysql"
    ids = ("mysql", "mariadb")
    runtime_dirs = ()

    def data_dir(self, exec_path: Path) -> Optional[Path]:
        return exec_path.parent.parent / "data"

    def initialize_data_dir(self, app_id: str, exec_path: Path, templates: TemplateLoader) -> None:
        base_dir = exec_path.parent.parent
        data_dir = self.data_dir(exec_path)
        logger.info(f"{app_id} data directory not found at {data_dir}, initializing")

        my_ini = base_dir / "my.ini"
        if not my_ini.exists():
            atomic_write_text(my_ini, templates.render(
                "my.ini.j2",
                base_dir=to_forward_slashes(base_dir),
                data_dir=to_forward_slashes(data_dir),
                port=3306,
            ))

        _run_init(app_id, [
            str(exec_path),
            "--initialize-insecure",
            "--console",
            f"--basedir={base_dir}",
            f"--datadir={data_dir}",
        ], cwd=exec_path.parent)
        logger.info(f"{app_id} initialized")


class PostgresFamily(AppFamily):
    name = "postgresql"
    ids = ("postgresql",)
    runtime_dirs = ()

    def data_dir(self, exec_path: Path) -> Optional[Path]:
        return exec_path.parent.parent / "data"

    def initialize_data_dir(self, app_id: str, exec_path: Path, templates: TemplateLoader) -> None:
        data_dir = self.data_dir(exec_path)
        logger.info(f"PostgreSQL data directory not found at {data_dir}, initializing")

        initdb = next(
            (p for p in (exec_path.parent / "initdb.exe", exec_path.parent / "initdb") if p.exists()),
            None,
        )
        if initdb is None:
            raise DataInitError(app_id, f"initdb not found in {exec_path.parent}")

        _run_init(app_id, [
            str(initdb), "-D", str(data_dir), "-E", "UTF8",
            "-U", "postgres", "--locale=C", "-A", "trust",
        ], cwd=exec_path.parent)
        logger.info("PostgreSQL initialized")

    def start_args(self, exec_path: Path, args: str) -> str:
        return f'{args} -D "{self.data_dir(exec_path)}"'.strip()


class RedisFamily(AppFamily):
    name = "redis"
    ids = ("redis",)


class GenericFamily(AppFamily):
    pass


FAMILIES: List[AppFamily] = [
    NginxFamily(),
    ApacheFamily(),
    PhpMyAdminFamily(),
    PhpFamily(),
    MySqlFamily(),
    PostgresFamily(),
    RedisFamily(),
]

GENERIC = GenericFamily()


def get_family(app_id: str) -> AppFamily:
    """Family for an app id; the generic family when nothing matches."""
    app_id = app_id.lower()
    for family in FAMILIES:
        if family.matches(app_id):
            return family
    return GENERIC


def family_context(
    app_id: str,
    install_dir: Path,
    exec_path: Optional[Path],
    config: DevStackConfig,
    registry: InstallRegistry,
    templates: Optional[TemplateLoader] = None,
) -> FamilyContext:
    return FamilyContext(
        app_id=app_id,
        install_dir=Path(install_dir),
        exec_path=Path(exec_path) if exec_path else None,
        config=config,
        registry=registry,
        templates=templates or get_template_loader(),
    )
