"""
Security proxies for records and collections.
"""

from heimdallr.proxy.collection import CollectionProxy
from heimdallr.proxy.record import RecordProxy

__all__ = [
    "CollectionProxy",
    "RecordProxy",
]
