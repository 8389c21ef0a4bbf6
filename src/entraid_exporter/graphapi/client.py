"""Microsoft Graph API client.

Provides an HTTP client authenticated with an Azure token credential, with
thread safety, pagination via ``@odata.nextLink`` and response validation
using Pydantic models.
"""

import threading
import time
from collections.abc import Generator, Sequence
from typing import Any, TypeVar

import httpx
import pydantic
import structlog
from azure.core.credentials import TokenCredential
from azure.core.exceptions import AzureError

from .types import RawDeviceData, RawUserData

logger = structlog.get_logger(__name__)

DEFAULT_BASE_URL = "https://graph.microsoft.com/v1.0"

DEFAULT_TIMEOUT = 30.0

DEFAULT_SCOPES = ("https://graph.microsoft.com/.default",)

DEFAULT_PAGE_SIZE = 100

USERS = "users"
DEVICES = "devices"
APPLICATIONS = "applications"
SERVICE_PRINCIPALS = "servicePrincipals"
GROUPS = "groups"

ModelT = TypeVar("ModelT", bound=pydantic.BaseModel)


class GraphApiError(Exception):
    """Raised when a Graph request fails or returns an unusable response."""


class CredentialAuth(httpx.Auth):
    """httpx auth flow attaching a bearer token from an Azure credential.

    The credential caches and refreshes access tokens itself, so asking it
    for a token on every request is cheap.
    """

    def __init__(
        self,
        credential: TokenCredential,
        scopes: Sequence[str],
        tenant_id: str = "",
    ):
        self._credential = credential
        self._scopes = tuple(scopes)
        self._token_kwargs = {"tenant_id": tenant_id} if tenant_id else {}

    def auth_flow(
        self,
        request: httpx.Request,
    ) -> Generator[httpx.Request, httpx.Response, None]:
        token = self._credential.get_token(*self._scopes, **self._token_kwargs)
        request.headers["Authorization"] = f"Bearer {token.token}"
        yield request


class GraphApiClient:
    """HTTP client for the Microsoft Graph API, scoped to one tenant.

    Lightweight client that handles authentication, follows pagination and
    returns Pydantic-validated data objects. Metric transformations are
    delegated to collectors.

    Thread-safe through thread-local storage of httpx.Client instances.
    Can be used as a context manager for automatic cleanup.
    """

    def __init__(
        self,
        credential: TokenCredential,
        tenant_id: str = "",
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = DEFAULT_TIMEOUT,
        scopes: Sequence[str] = DEFAULT_SCOPES,
        transport: httpx.BaseTransport | None = None,
    ):
        """Initialize the Graph API client.

        Args:
            credential: Azure token credential used to authorize requests.
            tenant_id: Tenant the credential belongs to, for logging.
            base_url: Graph base URL including the API version.
            timeout: Request timeout in seconds (default: 30.0).
            scopes: OAuth scopes requested for each access token.
            transport: Optional httpx transport, e.g. a MockTransport in tests.

        Raises:
            ValueError: If base_url is empty or timeout is not positive.
        """
        if not base_url:
            msg = "base_url cannot be empty"
            raise ValueError(msg)
        if timeout <= 0:
            msg = "timeout must be positive"
            raise ValueError(msg)

        self.base_url = base_url.rstrip("/")
        self.tenant_id = tenant_id
        self._timeout = timeout
        self._auth = CredentialAuth(credential, scopes, tenant_id)
        self._headers = {"Accept": "application/json"}
        self._transport = transport

        # Use thread-local storage for httpx.Client (thread safety)
        self._local = threading.local()

    @property
    def client(self) -> httpx.Client:
        """Get or create the thread-local httpx client."""
        if not hasattr(self._local, "client") or self._local.client.is_closed:
            self._local.client = httpx.Client(
                base_url=self.base_url,
                headers=self._headers,
                auth=self._auth,
                timeout=self._timeout,
                transport=self._transport,
            )
        return self._local.client

    def __enter__(self):
        """Enter context manager."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Exit context manager and cleanup resources."""
        self.close()

    def close(self):
        """Close the thread-local HTTP client if open."""
        if hasattr(self._local, "client") and not self._local.client.is_closed:
            self._local.client.close()

    def _make_request(
        self,
        url: str,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        """Make a GET request to the Graph API.

        Args:
            url: Endpoint path relative to base_url, or an absolute
                ``@odata.nextLink`` URL.
            params: Optional query parameters.
            headers: Optional extra request headers.

        Returns:
            Raw JSON response as dictionary.

        Raises:
            GraphApiError: If the request fails or the body is not JSON.
        """
        start_time = time.time()

        try:
            logger.debug(
                "Making API request",
                method="GET",
                url=url,
                params=params,
                tenant_id=self.tenant_id,
            )
            response = self.client.get(url, params=params, headers=headers)
            response.raise_for_status()
            duration = time.time() - start_time
            logger.debug("API request completed", duration_seconds=round(duration, 3))
            data = response.json()
        except httpx.HTTPStatusError as exc:
            msg = (
                f"Graph API returned HTTP {exc.response.status_code} for {url}: "
                f"{_error_message(exc.response)}"
            )
            raise GraphApiError(msg) from exc
        except httpx.HTTPError as exc:
            duration = time.time() - start_time
            logger.warning(
                "API request failed",
                url=url,
                duration_seconds=round(duration, 3),
                error=str(exc),
            )
            msg = f"Graph API request to {url} failed: {exc}"
            raise GraphApiError(msg) from exc
        except AzureError as exc:
            msg = f"Failed to acquire access token for {url}: {exc}"
            raise GraphApiError(msg) from exc
        except ValueError as exc:
            msg = f"Graph API returned invalid JSON for {url}"
            raise GraphApiError(msg) from exc

        if not isinstance(data, dict):
            msg = f"Graph API returned {type(data).__name__} instead of an object for {url}"
            raise GraphApiError(msg)
        return data

    def _get_paginated(
        self,
        endpoint: str,
        model: type[ModelT],
        params: dict[str, Any],
    ) -> list[ModelT]:
        """Fetch every page of a collection and validate its items.

        Pages are accumulated locally; an error on any page raises and the
        items gathered so far are dropped with the local list.
        """
        items: list[ModelT] = []
        pages = 0
        data = self._make_request(endpoint, params=params)
        while True:
            pages += 1
            values = data.get("value", [])
            if not isinstance(values, list):
                msg = f"Unexpected {endpoint} payload on page {pages}: value is not a list"
                raise GraphApiError(msg)
            try:
                items.extend(model.model_validate(item) for item in values)
            except pydantic.ValidationError as exc:
                msg = f"Unexpected {endpoint} payload on page {pages}"
                raise GraphApiError(msg) from exc

            next_link = data.get("@odata.nextLink")
            if not next_link:
                break
            data = self._make_request(next_link)

        logger.debug(
            "Fetched paginated collection",
            endpoint=endpoint,
            pages=pages,
            items=len(items),
            tenant_id=self.tenant_id,
        )
        return items

    def _list_params(
        self,
        select: Sequence[str],
        filter_expr: str | None,
        page_size: int,
    ) -> dict[str, Any]:
        params: dict[str, Any] = {"$top": page_size}
        if select:
            params["$select"] = ",".join(select)
        if filter_expr:
            params["$filter"] = filter_expr
        return params

    def get_users(
        self,
        select: Sequence[str] = (),
        filter_expr: str | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> list[RawUserData]:
        """Fetch all users of the tenant.

        Args:
            select: Properties to request; empty means Graph's default set.
            filter_expr: Optional OData ``$filter`` expression.
            page_size: Number of users requested per page.

        Returns:
            List of validated RawUserData objects.

        Raises:
            GraphApiError: If any page fails.
        """
        params = self._list_params(select, filter_expr, page_size)
        return self._get_paginated(f"/{USERS}", RawUserData, params)

    def get_devices(
        self,
        select: Sequence[str] = (),
        filter_expr: str | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> list[RawDeviceData]:
        """Fetch all devices of the tenant.

        Args:
            select: Properties to request; empty means Graph's default set.
            filter_expr: Optional OData ``$filter`` expression.
            page_size: Number of devices requested per page.

        Returns:
            List of validated RawDeviceData objects.

        Raises:
            GraphApiError: If any page fails.
        """
        params = self._list_params(select, filter_expr, page_size)
        return self._get_paginated(f"/{DEVICES}", RawDeviceData, params)

    def count(self, resource: str) -> int:
        """Return the number of objects in a directory collection.

        Uses an advanced query (``$count=true``), which Graph only serves
        with the ``ConsistencyLevel: eventual`` header.

        Args:
            resource: Collection name, e.g. ``"users"`` or ``"groups"``.

        Raises:
            GraphApiError: If the request fails or no count is returned.
        """
        data = self._make_request(
            f"/{resource}",
            params={"$count": "true", "$top": 1, "$select": "id"},
            headers={"ConsistencyLevel": "eventual"},
        )
        count = data.get("@odata.count")
        if not isinstance(count, int):
            msg = f"Graph API returned no @odata.count for {resource}"
            raise GraphApiError(msg)
        return count


def _error_message(response: httpx.Response) -> str:
    """Extract the Graph error message from an error response body."""
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if not isinstance(body, dict):
        return response.text[:200]
    error = body.get("error", {})
    if isinstance(error, dict):
        return error.get("message") or error.get("code") or "unknown error"
    return str(error)
