"""Background-refreshed Prometheus collector using composition.

A DomainPoller owns one metric domain (general stats, users, devices). It
refreshes a per-tenant snapshot on its own thread at a fixed interval, and
renders the cached snapshot on each Prometheus scrape without any I/O.
"""

import threading
import time
from collections.abc import Callable, Iterator, Mapping, Sequence
from dataclasses import dataclass, field, replace
from typing import Generic, TypeAlias, TypeVar

import structlog
from prometheus_client.core import (
    CounterMetricFamily,
    GaugeMetricFamily,
    SummaryMetricFamily,
)
from prometheus_client.metrics_core import Metric
from prometheus_client.registry import Collector

from . import graphapi
from .cache import SnapshotCache
from .credentials import CredentialError, GraphClientFactory

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass
class TenantScrape(Generic[T]):
    """State handed to a fetcher for one tenant in one cycle.

    Fetchers that tolerate partial failure (e.g. independent count queries)
    report each failure through ``record_error`` instead of raising.
    """

    tenant_id: str
    previous: T | None = None
    errors: list[Exception] = field(default_factory=list)

    def record_error(self, error: Exception) -> None:
        self.errors.append(error)


@dataclass
class ScrapeCounters:
    """Scrape bookkeeping for one tenant of one domain."""

    errors: int = 0
    duration_count: int = 0
    duration_sum: float = 0.0
    last_scrape_time: float | None = None


Fetcher: TypeAlias = Callable[[graphapi.GraphApiClient, TenantScrape[T]], T]
MetricsGenerator: TypeAlias = Callable[[Mapping[str, T]], Iterator[Metric]]


class DomainPoller(Collector, Generic[T]):
    """Prometheus collector refreshed by a background polling thread.

    Separates concerns through dependency injection:
    - Data fetching and transformation per tenant (via Fetcher)
    - Metric generation from the cached snapshot (via MetricsGenerator)
    - Scheduling, caching and error accounting (managed internally)

    Three locks are involved. The collect lock serializes refresh cycles of
    this domain. The snapshot cache and the scrape counters each have their
    own lock, and only those are taken while rendering, so a slow refresh
    never blocks a scrape.
    """

    def __init__(
        self,
        name: str,
        fetcher: Fetcher[T],
        generator: MetricsGenerator[T],
        client_factory: GraphClientFactory,
        tenants: Sequence[str],
        interval: float,
    ):
        """Initialize the poller.

        Args:
            name: Domain name, used in metric names (``entraid_<name>_...``).
            fetcher: Fetches one tenant's data using a Graph client.
            generator: Builds metric families from a tenant-to-data mapping.
            client_factory: Provides authenticated per-tenant clients.
            tenants: Tenants to refresh, in order.
            interval: Seconds to sleep between the end of one cycle and the
                start of the next.

        Raises:
            ValueError: If interval is not positive.
        """
        if interval <= 0:
            msg = f"interval for {name} collector must be positive"
            raise ValueError(msg)

        self.name = name
        self._fetcher = fetcher
        self._generator = generator
        self._client_factory = client_factory
        self._tenants = tuple(tenants)
        self._interval = interval

        self._cache = SnapshotCache[T]()
        self._collect_lock = threading.Lock()

        # Track scrape metadata manually (no global metric registration)
        self._counters: dict[str, ScrapeCounters] = {}
        self._counters_lock = threading.Lock()

        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._log = logger.bind(collector=name)

    @property
    def interval(self) -> float:
        return self._interval

    @property
    def cache(self) -> SnapshotCache[T]:
        return self._cache

    def start(self) -> None:
        """Spawn the background refresh loop; the first cycle runs at once."""
        if self._thread is not None and self._thread.is_alive():
            self._log.warning("Refresh loop already running")
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run,
            daemon=True,
            name=f"poller-{self.name}",
        )
        self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        """Ask the refresh loop to exit at its next sleep.

        An in-flight cycle is not interrupted; ``timeout`` bounds how long
        to wait for the thread.
        """
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            if not self._thread.is_alive():
                self._thread = None

    def _run(self) -> None:
        self._log.info("Starting refresh loop", interval_seconds=self._interval)
        while not self._stop_event.is_set():
            try:
                self.run_cycle()
            except Exception:
                self._log.exception("Collection cycle failed")

            self._log.debug(
                "Waiting for next collection cycle",
                interval_seconds=self._interval,
            )
            if self._stop_event.wait(self._interval):
                break
        self._log.info("Stopped refresh loop")

    def run_cycle(self) -> None:
        """Refresh every tenant once.

        Tenant-level API and credential errors are counted and do not stop
        the remaining tenants. Anything else propagates to the caller with
        the collect lock released.
        """
        with self._collect_lock:
            self._log.debug("Starting collection cycle", tenants=len(self._tenants))
            for tenant_id in self._tenants:
                self._collect_tenant(tenant_id)
            self._log.debug("Completed collection cycle")

    def _collect_tenant(self, tenant_id: str) -> None:
        log = self._log.bind(tenant_id=tenant_id)
        log.debug("Collecting tenant")
        start = time.monotonic()
        scrape = TenantScrape[T](tenant_id, previous=self._cache.get(tenant_id))
        errors = 0
        try:
            client = self._client_factory.get_client(tenant_id)
            data = self._fetcher(client, scrape)
        except (CredentialError, graphapi.GraphApiError) as exc:
            errors += 1
            log.error("Failed to collect tenant", error=str(exc))
        except Exception:
            # Counted here, logged by the cycle boundary
            errors += 1
            raise
        else:
            self._cache.replace(tenant_id, data)
            errors += len(scrape.errors)
        finally:
            duration = time.monotonic() - start
            self._record_scrape(tenant_id, duration, errors)
            log.debug(
                "Completed tenant collection",
                duration_seconds=round(duration, 3),
                errors=errors,
            )

    def _record_scrape(self, tenant_id: str, duration: float, errors: int) -> None:
        with self._counters_lock:
            counters = self._counters.setdefault(tenant_id, ScrapeCounters())
            counters.errors += errors
            counters.duration_count += 1
            counters.duration_sum += duration
            counters.last_scrape_time = time.time()

    def collect(self) -> Iterator[Metric]:
        """Collect metrics for a Prometheus scrape.

        Yields scrape metadata per tenant followed by the domain metrics
        generated from the current snapshot.

        Yields:
            Prometheus Metric objects (metadata + domain metrics).
        """
        with self._counters_lock:
            counters = {
                tenant_id: replace(c)
                for tenant_id, c in self._counters.items()
            }

        scrape_errors = CounterMetricFamily(
            f"entraid_{self.name}_scrape_errors_total",
            f"Total number of Entra ID {self.name} scrape errors",
            labels=["tenant_id"],
        )
        scrape_duration = SummaryMetricFamily(
            f"entraid_{self.name}_scrape_duration_seconds",
            f"Duration of Entra ID {self.name} scrape in seconds",
            labels=["tenant_id"],
        )
        last_scrape_time = GaugeMetricFamily(
            f"entraid_{self.name}_last_scrape_time",
            f"Last Entra ID {self.name} scrape time in seconds since epoch",
            labels=["tenant_id"],
        )
        for tenant_id, c in counters.items():
            scrape_errors.add_metric([tenant_id], c.errors)
            scrape_duration.add_metric([tenant_id], c.duration_count, c.duration_sum)
            if c.last_scrape_time is not None:
                last_scrape_time.add_metric([tenant_id], c.last_scrape_time)
        yield scrape_errors
        yield scrape_duration
        yield last_scrape_time

        yield from self._generator(self._cache.snapshot())
