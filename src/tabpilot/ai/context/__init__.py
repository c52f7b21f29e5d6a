"""Per-document prompt context stores."""

from .truncation import DocumentViews, TruncationBudget, TruncationConfig
from .window_cache import PromptWindowCache, WindowCacheConfig

__all__ = [
    "DocumentViews",
    "PromptWindowCache",
    "TruncationBudget",
    "TruncationConfig",
    "WindowCacheConfig",
]
