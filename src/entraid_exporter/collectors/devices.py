"""Device metrics collector for Entra ID.

Fetches every registered device of a tenant from the Graph API and generates
a device count and a per-device info metric labelled with OS, trust and
management attributes.
"""

from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from datetime import datetime, timezone

from prometheus_client.core import GaugeMetricFamily
from prometheus_client.metrics_core import Metric

from .. import graphapi
from ..poller import TenantScrape
from . import UNKNOWN

SELECT_FIELDS = (
    "id",
    "displayName",
    "operatingSystem",
    "operatingSystemVersion",
    "accountEnabled",
    "trustType",
    "enrollmentType",
    "deviceCategory",
    "managementType",
    "registrationDateTime",
)

# Graph's device resource has no ownership property
OWNERSHIP_NOT_AVAILABLE = "n/a"

DATETIME_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


@dataclass(frozen=True)
class DeviceMetric:
    """Represents a single Entra ID device with placeholders for absent fields."""

    device_id: str = UNKNOWN
    display_name: str = UNKNOWN
    device_category: str = UNKNOWN
    operating_system: str = UNKNOWN
    operating_system_version: str = UNKNOWN
    trust_type: str = UNKNOWN
    enrollment_type: str = UNKNOWN
    account_enabled: str = "false"
    management_type: str = UNKNOWN
    ownership: str = OWNERSHIP_NOT_AVAILABLE
    registration_datetime: str = UNKNOWN


def _format_datetime(value: datetime | None) -> str:
    """Format a timestamp as RFC 3339 in UTC, or the placeholder if absent.

    Naive timestamps are taken to be UTC already.
    """
    if value is None:
        return UNKNOWN
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.strftime(DATETIME_FORMAT)


def _transform_device(raw: graphapi.types.RawDeviceData) -> DeviceMetric:
    """Transform raw device data from the API into a DeviceMetric.

    Args:
        raw: Raw device data from the Graph API.

    Returns:
        DeviceMetric with every absent field replaced by its placeholder.
    """
    return DeviceMetric(
        device_id=raw.id or UNKNOWN,
        display_name=raw.display_name or UNKNOWN,
        device_category=raw.device_category or UNKNOWN,
        operating_system=raw.operating_system or UNKNOWN,
        operating_system_version=raw.operating_system_version or UNKNOWN,
        trust_type=raw.trust_type or UNKNOWN,
        enrollment_type=raw.enrollment_type or UNKNOWN,
        account_enabled="true" if raw.account_enabled else "false",
        management_type=raw.management_type or UNKNOWN,
        registration_datetime=_format_datetime(raw.registration_date_time),
    )


def fetch(
    client: graphapi.GraphApiClient,
    scrape: TenantScrape[tuple[DeviceMetric, ...]],
    filter_expr: str | None = None,
) -> tuple[DeviceMetric, ...]:
    """Fetch device metrics for one tenant from the Graph API.

    Args:
        client: Graph client for the tenant.
        scrape: Current scrape state for the tenant.
        filter_expr: Optional OData filter restricting the devices.

    Returns:
        Every device of the tenant.

    Raises:
        GraphApiError: If any page fails; nothing partial is returned.
    """
    raw_devices = client.get_devices(select=SELECT_FIELDS, filter_expr=filter_expr)
    return tuple(_transform_device(device) for device in raw_devices)


def generate_metrics(
    devices: Mapping[str, tuple[DeviceMetric, ...]],
) -> Iterator[Metric]:
    """Generate Prometheus metrics from cached device data.

    Args:
        devices: Devices per tenant id.

    Yields:
        Prometheus Metric objects.
    """
    devices_total = GaugeMetricFamily(
        "entraid_devices_total",
        "Total number of devices in Entra ID",
        labels=["tenant_id"],
    )
    devices_info = GaugeMetricFamily(
        "entraid_devices_info",
        "Information about devices in Entra ID",
        labels=[
            "tenant_id",
            "device_id",
            "display_name",
            "device_category",
            "operating_system",
            "operating_system_version",
            "trust_type",
            "enrollment_type",
            "account_enabled",
            "management_type",
            "ownership",
            "registration_datetime",
        ],
    )

    for tenant_id, tenant_devices in devices.items():
        devices_total.add_metric([tenant_id], len(tenant_devices))
        for device in tenant_devices:
            devices_info.add_metric(
                [
                    tenant_id,
                    device.device_id,
                    device.display_name,
                    device.device_category,
                    device.operating_system,
                    device.operating_system_version,
                    device.trust_type,
                    device.enrollment_type,
                    device.account_enabled,
                    device.management_type,
                    device.ownership,
                    device.registration_datetime,
                ],
                1,
            )

    yield devices_total
    yield devices_info
