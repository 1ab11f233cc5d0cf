"""Sapopsa storefront REST backend."""
from .app import create_app
from .store import Store

__all__ = ["create_app", "Store"]
