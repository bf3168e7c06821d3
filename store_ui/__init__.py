"""Storefront UI service bootstrapper."""

__version__ = "0.1.0"
