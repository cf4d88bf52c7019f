"""
Broadcast variables distributed over HTTP.

An origin node publishes each value once as a file served over HTTP;
worker nodes fetch it on first use and keep it in their block cache.
Published files expire after a configurable TTL.
"""

from .base import Broadcast, BroadcastState
from .cleaner import MetadataCleaner
from .http import HttpBroadcast, HttpBroadcastService, HTTP_READ_TIMEOUT
from .manager import BroadcastManager
from .registry import TimeStampedFileRegistry, delete_broadcast_file

__all__ = [
    "Broadcast",
    "BroadcastState",
    "MetadataCleaner",
    "HttpBroadcast",
    "HttpBroadcastService",
    "HTTP_READ_TIMEOUT",
    "BroadcastManager",
    "TimeStampedFileRegistry",
    "delete_broadcast_file",
]
