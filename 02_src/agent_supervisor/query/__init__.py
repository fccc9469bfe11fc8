"""Read-only query projections."""

from .query import DEFAULT_HEALTH_LOG, QueryService

__all__ = ["DEFAULT_HEALTH_LOG", "QueryService"]
