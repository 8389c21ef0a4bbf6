"""User metrics collector for Entra ID.

Fetches every user of a tenant from the Graph API and generates a user count
and a per-user info metric labelled with account attributes.
"""

from collections.abc import Iterator, Mapping
from dataclasses import dataclass

from prometheus_client.core import GaugeMetricFamily
from prometheus_client.metrics_core import Metric

from .. import graphapi
from ..poller import TenantScrape
from . import UNKNOWN

# Only request the properties rendered as labels
SELECT_FIELDS = (
    "id",
    "userPrincipalName",
    "displayName",
    "accountEnabled",
    "userType",
    "creationType",
)


@dataclass(frozen=True)
class UserMetric:
    """Represents a single Entra ID user with placeholders for absent fields."""

    user_id: str = UNKNOWN
    user_principal_name: str = UNKNOWN
    display_name: str = UNKNOWN
    account_enabled: str = "false"
    user_type: str = UNKNOWN
    creation_type: str = UNKNOWN


def _transform_user(raw: graphapi.types.RawUserData) -> UserMetric:
    """Transform raw user data from the API into a UserMetric.

    Args:
        raw: Raw user data from the Graph API.

    Returns:
        UserMetric with every absent field replaced by its placeholder.
    """
    return UserMetric(
        user_id=raw.id or UNKNOWN,
        user_principal_name=raw.user_principal_name or UNKNOWN,
        display_name=raw.display_name or UNKNOWN,
        account_enabled="true" if raw.account_enabled else "false",
        user_type=raw.user_type or UNKNOWN,
        creation_type=raw.creation_type or UNKNOWN,
    )


def fetch(
    client: graphapi.GraphApiClient,
    scrape: TenantScrape[tuple[UserMetric, ...]],
    filter_expr: str | None = None,
) -> tuple[UserMetric, ...]:
    """Fetch user metrics for one tenant from the Graph API.

    Args:
        client: Graph client for the tenant.
        scrape: Current scrape state for the tenant.
        filter_expr: Optional OData filter restricting the users.

    Returns:
        Every user of the tenant.

    Raises:
        GraphApiError: If any page fails; nothing partial is returned.
    """
    raw_users = client.get_users(select=SELECT_FIELDS, filter_expr=filter_expr)
    return tuple(_transform_user(user) for user in raw_users)


def generate_metrics(
    users: Mapping[str, tuple[UserMetric, ...]],
) -> Iterator[Metric]:
    """Generate Prometheus metrics from cached user data.

    Args:
        users: Users per tenant id.

    Yields:
        Prometheus Metric objects.
    """
    users_total = GaugeMetricFamily(
        "entraid_users_total",
        "Total number of users in Entra ID",
        labels=["tenant_id"],
    )
    users_info = GaugeMetricFamily(
        "entraid_users_info",
        "Information about users in Entra ID",
        labels=[
            "tenant_id",
            "user_id",
            "user_principal_name",
            "display_name",
            "account_enabled",
            "user_type",
            "creation_type",
        ],
    )

    for tenant_id, tenant_users in users.items():
        users_total.add_metric([tenant_id], len(tenant_users))
        for user in tenant_users:
            users_info.add_metric(
                [
                    tenant_id,
                    user.user_id,
                    user.user_principal_name,
                    user.display_name,
                    user.account_enabled,
                    user.user_type,
                    user.creation_type,
                ],
                1,
            )

    yield users_total
    yield users_info
