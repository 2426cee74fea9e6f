"""The source controller module.

This module materializes chart content from the source declared by a release
request (a git repository subpath or a packaged chart archive) into the chart
cache, where the packaging engine reads it from.
"""

from .artifact import ChartCacheEntry
from .cache import ChartCache
from .resolver import SourceResolver

__all__ = [
    "ChartCache",
    "ChartCacheEntry",
    "SourceResolver",
]
