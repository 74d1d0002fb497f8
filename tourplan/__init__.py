"""Offline-first cache and sync engine for weekly tour plans."""

__version__ = "0.1.0"
