"""HTTP surface for the task engine."""

from .server import create_app

__all__ = ["create_app"]
