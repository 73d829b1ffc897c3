"""
pvesync: state reconciliation and artifact generation for Proxmox VE clusters.

Keeps the live cluster, a versioned local record of it, and a generated
declarative artifact tree reconcilable through three operations:
``sync``, ``plan`` and ``apply``.
"""

__version__ = "0.1.0"
