"""Downstream relay websocket service."""

from .server import RelayServer

__all__ = ["RelayServer"]
