"""Microsoft Graph API client package.

Provides a lightweight HTTP client for the Graph directory API that returns
raw, validated API response types with minimal processing. Business logic
and metric transformations are handled by collector modules.

Exports:
    GraphApiClient: HTTP client with token authentication and pagination.
    GraphApiError: Raised for any failed Graph request.
    types: Module containing Pydantic models for API responses.
"""

from . import types
from .client import (
    APPLICATIONS,
    DEFAULT_BASE_URL,
    DEFAULT_PAGE_SIZE,
    DEFAULT_SCOPES,
    DEFAULT_TIMEOUT,
    DEVICES,
    GROUPS,
    SERVICE_PRINCIPALS,
    USERS,
    GraphApiClient,
    GraphApiError,
)

__all__ = [
    "APPLICATIONS",
    "DEFAULT_BASE_URL",
    "DEFAULT_PAGE_SIZE",
    "DEFAULT_SCOPES",
    "DEFAULT_TIMEOUT",
    "DEVICES",
    "GROUPS",
    "SERVICE_PRINCIPALS",
    "USERS",
    "GraphApiClient",
    "GraphApiError",
    "types",
]
