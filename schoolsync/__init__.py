"""Offline-first local persistence and synchronization for the school-management client."""

__version__ = "0.1.0"
