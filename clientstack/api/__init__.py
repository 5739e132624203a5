"""Deployment webhook HTTP surface."""

from .webhook import create_app

__all__ = ["create_app"]
