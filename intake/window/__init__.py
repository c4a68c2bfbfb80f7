"""Window Tracker: per-conversation provider messaging window."""

from .schemas import WindowExpireRequest, WindowView
from .tracker import WindowTracker

__all__ = ["WindowExpireRequest", "WindowTracker", "WindowView"]
