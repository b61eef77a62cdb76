"""
Registry fetch client.
"""

from hubmirror.hub.client import DEFAULT_ENDPOINT, HubClient

__all__ = [
    "DEFAULT_ENDPOINT",
    "HubClient",
]
