"""Installed app inventory module initialization."""

from .inventory import AppDescriptor, AppInventoryCache, CachedAppDescriptor

__all__ = [
    "AppDescriptor",
    "AppInventoryCache",
    "CachedAppDescriptor",
]
