"""
API client collaborator: the protocol the engine consumes and its Proxmox implementation.
"""

from .base import ApiClient
from .proxmox import ProxmoxApiClient

__all__ = ["ApiClient", "ProxmoxApiClient"]
