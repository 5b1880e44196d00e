"""
DevStack Config Templates

Server configuration files rendered during post-install and data setup.
"""

from .loader import TemplateLoader, get_template_loader

__all__ = ["TemplateLoader", "get_template_loader"]
