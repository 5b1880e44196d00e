"""DevStack Orchestrator.

Single entry point over the store and the service supervisor:
- Catalog refresh and app listing
- Install, cancel and uninstall
- Service start/stop/restart and boot recovery
- Default versions and dependent reconfiguration
"""

from .app import DevStack
from .hosts import HostsEditor, HostsFileEditor

__all__ = [
    "DevStack",
    "HostsEditor",
    "HostsFileEditor",
]
