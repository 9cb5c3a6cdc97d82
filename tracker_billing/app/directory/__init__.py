"""Adapter for the external tracking platform's user directory."""

from .client import DEFAULT_SESSION_TTL_SECONDS, TraccarDirectoryClient
from .models import DirectoryUser, NewDirectoryUser

__all__ = [
    "DEFAULT_SESSION_TTL_SECONDS",
    "DirectoryUser",
    "NewDirectoryUser",
    "TraccarDirectoryClient",
]
