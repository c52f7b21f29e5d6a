"""Editor-facing document models."""

from .document import DocumentSnapshot, WindowSettings

__all__ = ["DocumentSnapshot", "WindowSettings"]
