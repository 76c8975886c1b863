"""
Online/offline status derived from heartbeat recency.
"""
from typing import Optional

from config import config


def is_online(now: float, last_seen: float, timeout_seconds: Optional[float] = None) -> bool:
    """A client is online while less than `timeout_seconds` have passed since its last poll."""
    if timeout_seconds is None:
        timeout_seconds = config.online_timeout_seconds
    return (now - last_seen) < timeout_seconds


def status_label(now: float, last_seen: float, timeout_seconds: Optional[float] = None) -> str:
    return "online" if is_online(now, last_seen, timeout_seconds) else "offline"
