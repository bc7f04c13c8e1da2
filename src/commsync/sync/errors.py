"""Sync engine exceptions."""

from __future__ import annotations


class CommunicationsSyncError(RuntimeError):
    """Base communications sync error."""


class ClientResolutionError(CommunicationsSyncError):
    """Raised when an external contact cannot be mapped to a usable client."""
