"""Shared pagination schema for admin list endpoints."""

from pydantic import BaseModel


class PaginatedResponse(BaseModel):
    """Standard paginated response: items + total + offset info."""

    items: list
    total: int
    limit: int
    offset: int
    has_more: bool
