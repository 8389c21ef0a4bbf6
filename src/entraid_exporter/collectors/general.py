"""General directory statistics collector for Entra ID.

Counts users, devices, applications, service principals and groups per
tenant. Each count is an independent query: a failed one is recorded as a
scrape error and leaves the previous value of that statistic in place.
"""

from collections.abc import Iterator, Mapping

import structlog
from prometheus_client.core import GaugeMetricFamily
from prometheus_client.metrics_core import Metric

from .. import graphapi
from ..poller import TenantScrape

logger = structlog.get_logger(__name__)

# Statistic name -> Graph collection
STATISTICS = {
    "user_count": graphapi.USERS,
    "device_count": graphapi.DEVICES,
    "application_count": graphapi.APPLICATIONS,
    "service_principal_count": graphapi.SERVICE_PRINCIPALS,
    "group_count": graphapi.GROUPS,
}


def fetch(
    client: graphapi.GraphApiClient,
    scrape: TenantScrape[dict[str, float]],
) -> dict[str, float]:
    """Fetch directory statistics for one tenant.

    Args:
        client: Graph client for the tenant.
        scrape: Current scrape state; its previous stats seed the result.

    Returns:
        Statistic name to count, with stale values for failed queries.
    """
    stats = dict(scrape.previous or {})
    for metric, resource in STATISTICS.items():
        try:
            stats[metric] = float(client.count(resource))
        except graphapi.GraphApiError as exc:
            logger.error(
                "Failed to count directory objects",
                tenant_id=scrape.tenant_id,
                resource=resource,
                error=str(exc),
            )
            scrape.record_error(exc)
    return stats


def generate_metrics(stats: Mapping[str, Mapping[str, float]]) -> Iterator[Metric]:
    """Generate the entraid_stats gauge from cached statistics.

    Args:
        stats: Statistic maps per tenant id.

    Yields:
        Prometheus Metric objects.
    """
    stats_metric = GaugeMetricFamily(
        "entraid_stats",
        "Entra ID directory statistics",
        labels=["tenant_id", "metric"],
    )
    for tenant_id, tenant_stats in stats.items():
        for metric, value in tenant_stats.items():
            stats_metric.add_metric([tenant_id, metric], value)
    yield stats_metric
