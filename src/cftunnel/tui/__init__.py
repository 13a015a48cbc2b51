"""Textual dashboard."""

from .app import DashboardApp

__all__ = ["DashboardApp"]
