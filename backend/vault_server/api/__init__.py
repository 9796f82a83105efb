"""
HTTP API of the vault server.

Exports:
    create_http_app: Build the aiohttp application over a VaultService
"""

from .http_server import create_http_app

__all__ = ["create_http_app"]
