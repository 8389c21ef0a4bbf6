"""Per-tenant Graph client factory with credential caching.

Creates one authenticated GraphApiClient per tenant on first use, validates
its credential with a single token round-trip and reuses the client for the
lifetime of the process.
"""

import concurrent.futures
import os
from collections.abc import Callable, Mapping, Sequence
from typing import Any

import azure.identity
import structlog
from azure.core.credentials import TokenCredential

from . import graphapi
from .cache import ReadWriteLock

logger = structlog.get_logger(__name__)

TENANT_ENV_VAR = "AZURE_TENANT_ID"
CLIENT_ID_ENV_VAR = "AZURE_CLIENT_ID"
CLIENT_SECRET_ENV_VAR = "AZURE_CLIENT_SECRET"

TOKEN_VALIDATION_TIMEOUT = 30.0

CredentialFactory = Callable[[str], TokenCredential]


class CredentialError(Exception):
    """Raised when a tenant's Graph client cannot be created."""


class CredentialConstructionError(CredentialError):
    """Raised when the Azure credential itself cannot be built."""


class TokenValidationError(CredentialError):
    """Raised when the credential fails to produce an access token."""


def default_credential(
    tenant_id: str,
    environ: Mapping[str, str] = os.environ,
) -> TokenCredential:
    """Build an Azure credential for a tenant from the environment.

    Uses client-secret authentication when both ``AZURE_CLIENT_ID`` and
    ``AZURE_CLIENT_SECRET`` are set, otherwise the default credential chain
    (workload or managed identity, Azure CLI, ...).
    """
    client_id = environ.get(CLIENT_ID_ENV_VAR, "")
    client_secret = environ.get(CLIENT_SECRET_ENV_VAR, "")

    if client_id and client_secret and tenant_id:
        logger.debug("Using client credentials flow for authentication")
        return azure.identity.ClientSecretCredential(
            tenant_id=tenant_id,
            client_id=client_id,
            client_secret=client_secret,
        )

    if client_id:
        logger.debug("Using client ID without secret", client_id=client_id)
    else:
        logger.debug("Using default Azure credential chain")
    kwargs: dict[str, Any] = {"additionally_allowed_tenants": ["*"]}
    if client_id:
        kwargs["managed_identity_client_id"] = client_id
    return azure.identity.DefaultAzureCredential(**kwargs)


def _get_token_with_timeout(
    executor: concurrent.futures.Executor,
    credential: TokenCredential,
    scopes: Sequence[str],
    tenant_id: str,
    timeout: float,
) -> None:
    """Request one access token on ``executor``, giving up after ``timeout`` seconds.

    A request that has not started by the deadline is cancelled, so a hung
    identity endpoint holds at most the executor's own workers.
    """
    kwargs = {"tenant_id": tenant_id} if tenant_id else {}
    future = executor.submit(credential.get_token, *scopes, **kwargs)
    try:
        future.result(timeout=timeout)
    except concurrent.futures.TimeoutError as exc:
        future.cancel()
        msg = f"Token request did not complete within {timeout:g} seconds"
        raise TokenValidationError(msg) from exc
    except Exception as exc:
        msg = f"Failed to validate credential: {exc}"
        raise TokenValidationError(msg) from exc


class GraphClientFactory:
    """Lazily creates and caches one GraphApiClient per tenant.

    Lookups take a shared lock; creation takes an exclusive lock and
    re-checks the cache, so concurrent first requests for a tenant build a
    single client. Failed creations are not cached and are retried on the
    next call. Cached clients are never evicted.
    """

    def __init__(
        self,
        credential_factory: CredentialFactory = default_credential,
        *,
        base_url: str = graphapi.DEFAULT_BASE_URL,
        timeout: float = graphapi.DEFAULT_TIMEOUT,
        scopes: Sequence[str] = graphapi.DEFAULT_SCOPES,
        validation_timeout: float = TOKEN_VALIDATION_TIMEOUT,
        environ: Mapping[str, str] = os.environ,
    ):
        """Initialize the factory.

        Args:
            credential_factory: Builds a token credential for a tenant id.
            base_url: Graph base URL passed to every client.
            timeout: Graph request timeout in seconds.
            scopes: OAuth scopes used for validation and requests.
            validation_timeout: Upper bound for the validation token request.
            environ: Source of the ambient tenant id.
        """
        self._credential_factory = credential_factory
        self._base_url = base_url
        self._timeout = timeout
        self._scopes = tuple(scopes)
        self._validation_timeout = validation_timeout
        self._environ = environ

        self._clients: dict[str, graphapi.GraphApiClient] = {}
        self._lock = ReadWriteLock()
        # One worker: validations already run one at a time under the write lock
        self._validator = concurrent.futures.ThreadPoolExecutor(
            max_workers=1,
            thread_name_prefix="token-validation",
        )

    def get_client(self, tenant_id: str) -> graphapi.GraphApiClient:
        """Return the cached client for a tenant, creating it if needed.

        Args:
            tenant_id: Tenant to query; ``""`` means the ambient tenant from
                ``AZURE_TENANT_ID``.

        Raises:
            CredentialConstructionError: If the credential cannot be built.
            TokenValidationError: If no access token could be obtained.
        """
        with self._lock.read():
            client = self._clients.get(tenant_id)
        if client is not None:
            return client

        with self._lock.write():
            # Another thread may have created it while we waited
            client = self._clients.get(tenant_id)
            if client is not None:
                return client

            client = self._create_client(tenant_id)
            self._clients[tenant_id] = client
            return client

    def _create_client(self, tenant_id: str) -> graphapi.GraphApiClient:
        effective_tenant = tenant_id or self._environ.get(TENANT_ENV_VAR, "")
        log = logger.bind(tenant_id=effective_tenant)
        log.debug("Creating Graph client", requested_tenant_id=tenant_id)

        try:
            credential = self._credential_factory(effective_tenant)
        except Exception as exc:
            log.error("Failed to create Azure credential", error=str(exc))
            msg = f"Failed to create credential for tenant {effective_tenant!r}: {exc}"
            raise CredentialConstructionError(msg) from exc

        log.debug("Validating Azure credential by requesting a token")
        try:
            _get_token_with_timeout(
                self._validator,
                credential,
                self._scopes,
                effective_tenant,
                self._validation_timeout,
            )
        except TokenValidationError as exc:
            log.error("Failed to validate Azure credential", error=str(exc))
            raise

        client = graphapi.GraphApiClient(
            credential=credential,
            tenant_id=effective_tenant,
            base_url=self._base_url,
            timeout=self._timeout,
            scopes=self._scopes,
        )
        log.info("Created Graph client")
        return client
