"""HTTP interface for status reporting and manual sends."""

from .app import create_app

__all__ = ["create_app"]
