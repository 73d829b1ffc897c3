"""
Discovery Adapter: remote state -> ResourceSet.
"""

from .adapter import DiscoveryAdapter

__all__ = ["DiscoveryAdapter"]
