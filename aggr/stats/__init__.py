"""Live statistics computed over trailing time windows."""

from .counter import SlidingWindowCounter, get_hms, window_label

__all__ = [
    "SlidingWindowCounter",
    "get_hms",
    "window_label",
]
