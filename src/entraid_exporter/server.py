"""HTTP server for the Entra ID Prometheus Exporter."""

import contextlib
import json
import logging
import os
import pathlib
import re
import sys
from collections.abc import Mapping
from typing import Literal

import prometheus_client
import prometheus_client.core
import pydantic
import starlette.applications
import starlette.requests
import starlette.responses
import starlette.routing
import structlog

from . import credentials, graphapi, poller
from .collectors import devices, general, users

CONFIG_ENV_VAR = "ENTRAID_EXPORTER_CONFIG_PATH"
LOG_DEBUG_ENV_VAR = "LOG_DEBUG"
logger = structlog.get_logger(__name__)

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}

ROOT_PAGE = """<html>
<head><title>Entra ID Exporter</title></head>
<body>
<h1>Entra ID Exporter</h1>
<p><a href="{metrics_path}">Metrics</a></p>
<p><a href="/health">Health</a></p>
</body>
</html>
"""


def parse_duration(value: str) -> float:
    """Parse a duration such as ``"90s"``, ``"5m"`` or ``"1h30m"`` into seconds.

    A bare number is taken as seconds.
    """
    text = value.strip()
    try:
        return float(text)
    except ValueError:
        pass

    position = 0
    seconds = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != position:
            break
        seconds += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()
    if position == 0 or position != len(text):
        msg = f"invalid duration: {value!r}"
        raise ValueError(msg)
    return seconds


class CollectorConfig(pydantic.BaseModel):
    """Configuration of one metric domain."""

    scrape_interval: float = pydantic.Field(
        0.0,
        description="Seconds between background refreshes, <= 0 disables",
    )
    filter: str | None = pydantic.Field(
        None,
        description="OData $filter applied to the domain's list query",
    )

    @pydantic.field_validator("scrape_interval", mode="before")
    @classmethod
    def _parse_interval(cls, value: object) -> object:
        if isinstance(value, str):
            return parse_duration(value)
        return value

    @property
    def enabled(self) -> bool:
        return self.scrape_interval > 0


class CollectorsConfig(pydantic.BaseModel):
    """Per-domain collector configuration."""

    general: CollectorConfig = pydantic.Field(
        default_factory=lambda: CollectorConfig(scrape_interval=300.0),
    )
    users: CollectorConfig = pydantic.Field(default_factory=CollectorConfig)
    devices: CollectorConfig = pydantic.Field(default_factory=CollectorConfig)


class ExporterConfig(pydantic.BaseModel):
    """Configuration for the Entra ID Prometheus Exporter."""

    tenants: list[str] = pydantic.Field(
        default_factory=list,
        description="Tenant IDs to collect; empty uses AZURE_TENANT_ID",
    )
    collectors: CollectorsConfig = pydantic.Field(default_factory=CollectorsConfig)
    graph_api_url: str = pydantic.Field(
        graphapi.DEFAULT_BASE_URL,
        description="Base URL for the Microsoft Graph API",
    )
    graph_api_timeout: float = pydantic.Field(
        graphapi.DEFAULT_TIMEOUT,
        description="Request timeout in seconds",
        gt=0,
    )
    host: str = pydantic.Field("0.0.0.0", description="HTTP server bind address")
    port: int = pydantic.Field(8080, description="HTTP server port", gt=0, lt=65536)
    metrics_path: str = pydantic.Field(
        "/metrics",
        description="URL path for metrics endpoint",
    )
    log_level: str = pydantic.Field("INFO", description="Logging level")
    log_format: Literal["logfmt", "json"] = pydantic.Field(
        "logfmt",
        description="Log output format",
    )
    log_file: str | None = pydantic.Field(
        None,
        description="Append logs to this file instead of stdout",
    )


def configure_logging(
    log_level_name: str,
    log_format: str = "logfmt",
    log_file: str | None = None,
) -> None:
    """Configure structlog for logfmt or JSON output.

    Logs go to stdout, or are appended to ``log_file`` when one is given.
    """
    log_level = getattr(logging, log_level_name.upper(), logging.INFO)
    output = pathlib.Path(log_file).open("a") if log_file else sys.stdout
    renderer = (
        structlog.processors.JSONRenderer()
        if log_format == "json"
        else structlog.processors.LogfmtRenderer(
            key_order=("timestamp", "level", "msg"),
        )
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.EventRenamer("msg"),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=output),
        cache_logger_on_first_use=True,
    )


def debug_requested(environ: Mapping[str, str] = os.environ) -> bool:
    """Whether LOG_DEBUG=true asks for debug logging regardless of config."""
    return environ.get(LOG_DEBUG_ENV_VAR, "").lower() == "true"


def load_config(config_path: str) -> ExporterConfig:
    """Load configuration from JSON file."""
    path = pathlib.Path(config_path)
    if not path.exists():
        msg = f"Configuration file not found: {config_path}"
        raise FileNotFoundError(msg)

    with path.open("r") as f:
        data = json.load(f)

    return ExporterConfig(**data)


def mask_value(value: str) -> str:
    """Mask all but the edges of a secret-ish value for display."""
    if not value:
        return "<not set>"
    if len(value) <= 8:  # noqa: PLR2004
        return "****" + value[-4:]
    return value[:4] + "****" + value[-4:]


def check_azure_environment(environ: Mapping[str, str] = os.environ) -> None:
    """Warn about Azure authentication variables that look incomplete."""
    tenant_id = environ.get(credentials.TENANT_ENV_VAR, "")
    client_id = environ.get(credentials.CLIENT_ID_ENV_VAR, "")
    client_secret = environ.get(credentials.CLIENT_SECRET_ENV_VAR, "")

    if not tenant_id:
        logger.warning("AZURE_TENANT_ID is not set, using the credential's default tenant")
    if not client_id:
        logger.warning(
            "AZURE_CLIENT_ID is not set, authentication may fail "
            "if not using managed identity",
        )
    if client_id and not client_secret:
        logger.warning("AZURE_CLIENT_ID is set without AZURE_CLIENT_SECRET")


def resolve_tenants(
    configured: list[str],
    environ: Mapping[str, str] = os.environ,
) -> list[str]:
    """Resolve the tenant list once for the lifetime of the process.

    Falls back to ``AZURE_TENANT_ID`` when no tenants are configured, and to
    ``[""]`` (the credential's default tenant) when that is unset too.
    """
    if configured:
        return list(configured)

    env_tenant = environ.get(credentials.TENANT_ENV_VAR, "")
    if env_tenant:
        logger.debug("No tenants configured, using tenant from environment")
        return [env_tenant]

    logger.warning(
        "No tenant IDs in config or environment, "
        "authentication may fail or use the default tenant",
    )
    return [""]


def build_pollers(
    config: ExporterConfig,
    client_factory: credentials.GraphClientFactory,
    tenants: list[str],
) -> list[poller.DomainPoller]:
    """Construct a DomainPoller for every enabled collector.

    Domains whose scrape interval is <= 0 are skipped entirely.
    Dependencies are injected into fetcher functions at build time.
    """
    pollers: list[poller.DomainPoller] = []
    collectors = config.collectors

    if collectors.general.enabled:
        pollers.append(
            poller.DomainPoller(
                name="general",
                fetcher=general.fetch,
                generator=general.generate_metrics,
                client_factory=client_factory,
                tenants=tenants,
                interval=collectors.general.scrape_interval,
            ),
        )

    if collectors.users.enabled:
        users_filter = collectors.users.filter
        pollers.append(
            poller.DomainPoller(
                name="users",
                fetcher=lambda client, scrape: users.fetch(
                    client,
                    scrape,
                    filter_expr=users_filter,
                ),
                generator=users.generate_metrics,
                client_factory=client_factory,
                tenants=tenants,
                interval=collectors.users.scrape_interval,
            ),
        )

    if collectors.devices.enabled:
        devices_filter = collectors.devices.filter
        pollers.append(
            poller.DomainPoller(
                name="devices",
                fetcher=lambda client, scrape: devices.fetch(
                    client,
                    scrape,
                    filter_expr=devices_filter,
                ),
                generator=devices.generate_metrics,
                client_factory=client_factory,
                tenants=tenants,
                interval=collectors.devices.scrape_interval,
            ),
        )

    return pollers


def create_registry_with_collectors(
    pollers: list[poller.DomainPoller],
) -> prometheus_client.core.CollectorRegistry:
    """Create a Prometheus registry holding the given pollers.

    Creates a custom registry (not the global one) so that only enabled
    domains expose metric families.
    """
    registry = prometheus_client.core.CollectorRegistry()
    for domain_poller in pollers:
        registry.register(domain_poller)
        logger.info(
            "Enabled collector",
            collector=domain_poller.name,
            interval_seconds=domain_poller.interval,
        )
    return registry


def create_starlette_app(
    metrics_path: str,
    registry: prometheus_client.core.CollectorRegistry,
    pollers: list[poller.DomainPoller],
    debug_endpoints: bool = False,
) -> starlette.applications.Starlette:
    """Create a Starlette application serving metrics and health.

    The pollers' refresh loops are started when the application starts up
    and asked to stop on shutdown.

    Args:
        metrics_path: URL path for metrics endpoint (e.g., "/metrics").
        registry: Prometheus collector registry.
        pollers: Pollers whose refresh loops follow the app lifespan.
        debug_endpoints: Expose /debug/env with masked Azure settings.

    Returns:
        Configured Starlette application.
    """

    def metrics_endpoint(
        request: starlette.requests.Request,
    ) -> starlette.responses.Response:
        """Render the cached metrics in Prometheus exposition format."""
        logger.info(
            "HTTP request",
            client_ip=request.client.host if request.client else "unknown",
            method=request.method,
            path=request.url.path,
        )
        try:
            metrics_output = prometheus_client.generate_latest(registry)
        except Exception:
            logger.exception("Failed to render metrics")
            return starlette.responses.PlainTextResponse(
                "Internal server error",
                status_code=500,
            )
        return starlette.responses.PlainTextResponse(
            content=metrics_output,
            media_type="text/plain; version=0.0.4; charset=utf-8",
        )

    def health_endpoint(
        request: starlette.requests.Request,
    ) -> starlette.responses.Response:
        return starlette.responses.PlainTextResponse("OK")

    def root_endpoint(
        request: starlette.requests.Request,
    ) -> starlette.responses.Response:
        return starlette.responses.HTMLResponse(
            ROOT_PAGE.format(metrics_path=metrics_path),
        )

    def debug_env_endpoint(
        request: starlette.requests.Request,
    ) -> starlette.responses.Response:
        lines = [
            "Azure Authentication Environment Variables:",
            f"AZURE_TENANT_ID: {mask_value(os.environ.get('AZURE_TENANT_ID', ''))}",
            f"AZURE_CLIENT_ID: {mask_value(os.environ.get('AZURE_CLIENT_ID', ''))}",
            "AZURE_CLIENT_SECRET: [MASKED]",
        ]
        return starlette.responses.PlainTextResponse("\n".join(lines) + "\n")

    @contextlib.asynccontextmanager
    async def lifespan(app: starlette.applications.Starlette):
        for domain_poller in pollers:
            domain_poller.start()
        yield
        logger.info("Shutting down refresh loops")
        for domain_poller in pollers:
            domain_poller.stop(timeout=0)

    routes = [
        starlette.routing.Route("/", root_endpoint, methods=["GET"]),
        starlette.routing.Route("/health", health_endpoint, methods=["GET"]),
        starlette.routing.Route(metrics_path, metrics_endpoint, methods=["GET"]),
    ]
    if debug_endpoints:
        routes.append(
            starlette.routing.Route("/debug/env", debug_env_endpoint, methods=["GET"]),
        )

    app = starlette.applications.Starlette(routes=routes, lifespan=lifespan)
    app.state.registry = registry
    app.state.pollers = pollers
    return app


def create_exporter(
    config: ExporterConfig,
    client_factory: credentials.GraphClientFactory | None = None,
) -> starlette.applications.Starlette:
    """Construct the exporter ASGI app from validated config."""
    if client_factory is None:
        client_factory = credentials.GraphClientFactory(
            base_url=config.graph_api_url,
            timeout=config.graph_api_timeout,
        )

    tenants = resolve_tenants(config.tenants)
    logger.info("Using tenants", tenants=tenants)

    pollers = build_pollers(config, client_factory, tenants)
    if not pollers:
        logger.warning("No collectors enabled")
    registry = create_registry_with_collectors(pollers)

    return create_starlette_app(
        metrics_path=config.metrics_path,
        registry=registry,
        pollers=pollers,
        debug_endpoints=config.log_level.upper() == "DEBUG",
    )


def create_app(config_path: str | None = None) -> starlette.applications.Starlette:
    """Create the exporter ASGI app using a config path or environment default."""
    resolved_path = config_path or os.environ.get(CONFIG_ENV_VAR, "/config.json")
    config = load_config(resolved_path)
    if debug_requested():
        config = config.model_copy(update={"log_level": "DEBUG"})
    configure_logging(config.log_level, config.log_format, config.log_file)
    check_azure_environment()
    return create_exporter(config)
