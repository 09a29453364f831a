"""
Proxy — HTTP read side for stored media.
"""

from .server import create_app, run_server

__all__ = ["create_app", "run_server"]
