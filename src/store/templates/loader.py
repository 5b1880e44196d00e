"""
Config Template Loader

Finds server config templates in the package, then in user overrides.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, List

from jinja2 import ChoiceLoader, Environment, FileSystemLoader, StrictUndefined, TemplateNotFound
from jinja2 import Template

from common.exceptions import TemplateNotFoundError

logger = logging.getLogger(__name__)


class TemplateLoader:
    """
    Loads config templates from multiple locations.

    Search order:
    1. User overrides (~/.config/devstack/templates)
    2. Bundled templates (this package)
    """

    TEMPLATE_PATHS = [
        Path.home() / ".config/devstack/templates",
        Path(__file__).parent,
    ]

    def __init__(self, additional_paths: Optional[List[Path]] = None):
        # Extra paths win over the defaults
        self._paths = list(additional_paths or []) + list(self.TEMPLATE_PATHS)
        self._env = self._create_environment()

    def _create_environment(self) -> Environment:
        loaders = []
        for path in self._paths:
            if path.exists() and path.is_dir():
                loaders.append(FileSystemLoader(str(path)))
                logger.debug(f"Added template path: {path}")

        return Environment(
            loader=ChoiceLoader(loaders),
            autoescape=False,
            keep_trailing_newline=True,
            undefined=StrictUndefined,
        )

    def get_template(self, name: str) -> Template:
        """
        Get a template by name.

        Raises:
            TemplateNotFoundError: If no search path has it.
        """
        try:
            return self._env.get_template(name)
        except TemplateNotFound:
            raise TemplateNotFoundError(name)

    def render(self, name: str, **variables) -> str:
        """
        Render a template with variables.

        Args:
            name: Template filename, e.g. "nginx.conf.j2"
            **variables: Template variables; all must be supplied

        Returns:
            Rendered text.
        """
        return self.get_template(name).render(**variables)

    def list_templates(self) -> List[str]:
        return sorted(self._env.list_templates(extensions=["j2"]))

    def template_exists(self, name: str) -> bool:
        try:
            self._env.get_template(name)
            return True
        except TemplateNotFound:
            return False


_loader: Optional[TemplateLoader] = None


def get_template_loader() -> TemplateLoader:
    """Get the shared template loader."""
    global _loader
    if _loader is None:
        _loader = TemplateLoader()
    return _loader
