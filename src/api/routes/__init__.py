"""FastAPI route modules.

Exports all route modules for inclusion in the main application.
"""

from src.api.routes import catalog, progress, segment_jobs

__all__ = [
    "catalog",
    "progress",
    "segment_jobs",
]
