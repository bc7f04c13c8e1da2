"""HTTP surface: webhook receiver, health, and on-demand sync."""

from commsync.api.app import create_app

__all__ = ["create_app"]
