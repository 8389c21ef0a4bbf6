"""Tests for DomainPoller wired with real collector pipelines.

These tests drive refresh cycles through run_cycle() (or the background
loop) and observe the results through the public collect() method, the way
a Prometheus scrape would. Per-domain transforms are covered here end to end
and in more detail under tests/collectors/.
"""

import threading
import time
from unittest.mock import MagicMock

import httpx
import pytest

from entraid_exporter import credentials, graphapi, poller
from entraid_exporter.collectors import general, users
from entraid_exporter.graphapi import types

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def mock_client() -> MagicMock:
    """Mock GraphApiClient with no pre-configured return values."""
    return MagicMock(spec=graphapi.GraphApiClient)


@pytest.fixture
def client_factory(mock_client: MagicMock) -> MagicMock:
    """Client factory handing out the same mock client for every tenant."""
    factory = MagicMock(spec=credentials.GraphClientFactory)
    factory.get_client.return_value = mock_client
    return factory


@pytest.fixture
def users_poller(client_factory: MagicMock) -> poller.DomainPoller:
    """DomainPoller wired with the real users pipeline for two tenants."""
    return poller.DomainPoller(
        name="users",
        fetcher=users.fetch,
        generator=users.generate_metrics,
        client_factory=client_factory,
        tenants=["t1", "t2"],
        interval=60.0,
    )


def _metrics(p: poller.DomainPoller) -> dict:
    return {m.name: m for m in p.collect()}


def _by_tenant(metric) -> dict[str, float]:
    return {s.labels["tenant_id"]: s.value for s in metric.samples}


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("interval", [0, -1.0])
def test_non_positive_interval_rejected(client_factory: MagicMock, interval: float):
    """A disabled interval cannot be used to build a poller."""
    with pytest.raises(ValueError, match="positive"):
        poller.DomainPoller(
            name="users",
            fetcher=users.fetch,
            generator=users.generate_metrics,
            client_factory=client_factory,
            tenants=["t1"],
            interval=interval,
        )


# ---------------------------------------------------------------------------
# Scrape metadata
# ---------------------------------------------------------------------------


def test_collect_before_first_cycle_is_empty(users_poller: poller.DomainPoller):
    """Before any refresh the families exist but carry no samples."""
    metrics = _metrics(users_poller)
    assert metrics["entraid_users_total"].samples == []
    assert metrics["entraid_users_info"].samples == []
    assert metrics["entraid_users_scrape_errors"].samples == []


def test_collect_yields_scrape_metadata_per_tenant(
    mock_client: MagicMock,
    users_poller: poller.DomainPoller,
):
    """Errors, duration and last scrape time are labelled per tenant."""
    mock_client.get_users.return_value = []
    users_poller.run_cycle()

    metrics = _metrics(users_poller)

    assert _by_tenant(metrics["entraid_users_scrape_errors"]) == {"t1": 0, "t2": 0}
    assert set(_by_tenant(metrics["entraid_users_last_scrape_time"])) == {"t1", "t2"}
    duration_counts = {
        s.labels["tenant_id"]: s.value
        for s in metrics["entraid_users_scrape_duration_seconds"].samples
        if s.name == "entraid_users_scrape_duration_seconds_count"
    }
    assert duration_counts == {"t1": 1, "t2": 1}


def test_collect_error_sample_name_has_total_suffix(
    mock_client: MagicMock,
    users_poller: poller.DomainPoller,
):
    """The error counter is exposed as entraid_<domain>_scrape_errors_total."""
    mock_client.get_users.return_value = []
    users_poller.run_cycle()

    sample_names = {s.name for s in _metrics(users_poller)["entraid_users_scrape_errors"].samples}
    assert sample_names == {"entraid_users_scrape_errors_total"}


def test_collect_does_not_fetch(
    mock_client: MagicMock,
    users_poller: poller.DomainPoller,
):
    """Rendering never calls the Graph API."""
    list(users_poller.collect())
    list(users_poller.collect())
    mock_client.get_users.assert_not_called()


# ---------------------------------------------------------------------------
# Error handling
# ---------------------------------------------------------------------------


def test_fetch_error_counted_and_other_tenants_collected(
    mock_client: MagicMock,
    users_poller: poller.DomainPoller,
):
    """A failing tenant does not prevent collection of the next tenant."""
    mock_client.get_users.side_effect = [
        graphapi.GraphApiError("throttled"),
        [types.RawUserData(id="u1")],
    ]

    users_poller.run_cycle()

    metrics = _metrics(users_poller)
    assert _by_tenant(metrics["entraid_users_scrape_errors"]) == {"t1": 1, "t2": 0}
    assert _by_tenant(metrics["entraid_users_total"]) == {"t2": 1}


def test_credential_error_counted(
    client_factory: MagicMock,
    users_poller: poller.DomainPoller,
):
    """A tenant whose client cannot be created counts an error."""
    client_factory.get_client.side_effect = credentials.TokenValidationError("denied")

    users_poller.run_cycle()

    metrics = _metrics(users_poller)
    assert _by_tenant(metrics["entraid_users_scrape_errors"]) == {"t1": 1, "t2": 1}
    assert metrics["entraid_users_total"].samples == []


def test_fetch_error_keeps_previous_snapshot(
    mock_client: MagicMock,
    users_poller: poller.DomainPoller,
):
    """A failed refresh leaves the tenant's cached users exactly as before."""
    mock_client.get_users.return_value = [
        types.RawUserData(id="u1"),
        types.RawUserData(id="u2"),
    ]
    users_poller.run_cycle()
    before = users_poller.cache.snapshot()

    mock_client.get_users.side_effect = graphapi.GraphApiError("page 2 of 3 failed")
    users_poller.run_cycle()

    assert users_poller.cache.snapshot() == before
    metrics = _metrics(users_poller)
    assert _by_tenant(metrics["entraid_users_total"]) == {"t1": 2, "t2": 2}
    assert _by_tenant(metrics["entraid_users_scrape_errors"]) == {"t1": 1, "t2": 1}


def test_error_count_persists_after_recovery(
    mock_client: MagicMock,
    users_poller: poller.DomainPoller,
):
    """The error counter is monotonic across successful cycles."""
    mock_client.get_users.side_effect = graphapi.GraphApiError("blip")
    users_poller.run_cycle()

    mock_client.get_users.side_effect = None
    mock_client.get_users.return_value = []
    users_poller.run_cycle()

    metrics = _metrics(users_poller)
    assert _by_tenant(metrics["entraid_users_scrape_errors"]) == {"t1": 1, "t2": 1}


def test_unexpected_fault_propagates_and_releases_lock(
    mock_client: MagicMock,
    users_poller: poller.DomainPoller,
):
    """A non-API fault aborts the cycle without leaking the collect lock."""
    mock_client.get_users.side_effect = KeyError("bug")

    with pytest.raises(KeyError):
        users_poller.run_cycle()
    errors = _by_tenant(_metrics(users_poller)["entraid_users_scrape_errors"])
    assert errors == {"t1": 1}

    mock_client.get_users.side_effect = None
    mock_client.get_users.return_value = []
    users_poller.run_cycle()
    assert _by_tenant(_metrics(users_poller)["entraid_users_total"]) == {"t1": 0, "t2": 0}
    errors = _by_tenant(_metrics(users_poller)["entraid_users_scrape_errors"])
    assert errors == {"t1": 1, "t2": 0}


def test_malformed_response_isolated_to_tenant():
    """A tenant answering with a non-object body does not stop the others."""
    credential = MagicMock()
    credential.get_token.return_value = MagicMock(token="access-token")

    def transport_for(body: bytes) -> httpx.MockTransport:
        return httpx.MockTransport(lambda request: httpx.Response(200, content=body))

    clients = {
        "t1": graphapi.GraphApiClient(credential, "t1", transport=transport_for(b"[]")),
        "t2": graphapi.GraphApiClient(
            credential,
            "t2",
            transport=transport_for(b'{"value": [{"id": "u1"}]}'),
        ),
    }
    factory = MagicMock(spec=credentials.GraphClientFactory)
    factory.get_client.side_effect = clients.__getitem__
    p = poller.DomainPoller(
        name="users",
        fetcher=users.fetch,
        generator=users.generate_metrics,
        client_factory=factory,
        tenants=["t1", "t2"],
        interval=60.0,
    )

    p.run_cycle()

    metrics = _metrics(p)
    assert _by_tenant(metrics["entraid_users_scrape_errors"]) == {"t1": 1, "t2": 0}
    assert _by_tenant(metrics["entraid_users_total"]) == {"t2": 1}


def test_partial_errors_reported_by_fetcher_are_counted(client_factory: MagicMock):
    """Errors recorded through TenantScrape.record_error are counted."""

    def fetcher(client, scrape):
        scrape.record_error(graphapi.GraphApiError("one"))
        scrape.record_error(graphapi.GraphApiError("two"))
        return {"user_count": 1.0}

    p = poller.DomainPoller(
        name="general",
        fetcher=fetcher,
        generator=general.generate_metrics,
        client_factory=client_factory,
        tenants=["t1"],
        interval=60.0,
    )
    p.run_cycle()

    metrics = _metrics(p)
    assert _by_tenant(metrics["entraid_general_scrape_errors"]) == {"t1": 2}
    assert p.cache.get("t1") == {"user_count": 1.0}


def test_fetcher_receives_previous_value(client_factory: MagicMock):
    """The previous snapshot for the tenant is handed to the fetcher."""
    seen = []

    def fetcher(client, scrape):
        seen.append(scrape.previous)
        return len(seen)

    p = poller.DomainPoller(
        name="general",
        fetcher=fetcher,
        generator=lambda snapshot: iter(()),
        client_factory=client_factory,
        tenants=["t1"],
        interval=60.0,
    )
    p.run_cycle()
    p.run_cycle()

    assert seen == [None, 1]


# ---------------------------------------------------------------------------
# Background loop
# ---------------------------------------------------------------------------


def test_loop_survives_faulting_cycle(client_factory: MagicMock):
    """A cycle raising an unexpected error is followed by another cycle."""
    second_cycle = threading.Event()
    calls = []

    def fetcher(client, scrape):
        calls.append(scrape.tenant_id)
        if len(calls) == 1:
            raise RuntimeError("unexpected")
        second_cycle.set()
        return {}

    p = poller.DomainPoller(
        name="general",
        fetcher=fetcher,
        generator=general.generate_metrics,
        client_factory=client_factory,
        tenants=["t1"],
        interval=0.05,
    )
    p.start()
    try:
        assert second_cycle.wait(timeout=5)
    finally:
        p.stop(timeout=5)

    assert p.cache.get("t1") == {}


def test_faulting_cycle_waits_full_interval(client_factory: MagicMock):
    """The cycle after a fault starts only once the interval has elapsed."""
    interval = 0.3
    second_cycle = threading.Event()
    started: list[float] = []

    def fetcher(client, scrape):
        started.append(time.monotonic())
        if len(started) == 1:
            raise RuntimeError("unexpected")
        second_cycle.set()
        return {}

    p = poller.DomainPoller(
        name="general",
        fetcher=fetcher,
        generator=general.generate_metrics,
        client_factory=client_factory,
        tenants=["t1"],
        interval=interval,
    )
    p.start()
    try:
        assert second_cycle.wait(timeout=5)
    finally:
        p.stop(timeout=5)

    assert started[1] - started[0] >= interval - 0.01


def test_faulting_cycle_not_retried_immediately(client_factory: MagicMock):
    """With a long interval, a fault is not followed by a quick retry."""
    fetcher = MagicMock(side_effect=RuntimeError("unexpected"))
    p = poller.DomainPoller(
        name="general",
        fetcher=fetcher,
        generator=general.generate_metrics,
        client_factory=client_factory,
        tenants=["t1"],
        interval=60.0,
    )
    p.start()
    try:
        deadline = time.monotonic() + 5
        while not fetcher.called and time.monotonic() < deadline:
            time.sleep(0.01)
        time.sleep(0.2)
        assert fetcher.call_count == 1
    finally:
        p.stop(timeout=5)


def test_loop_sleeps_between_cycles(client_factory: MagicMock):
    """No second cycle runs before the interval has elapsed."""
    first_cycle = threading.Event()
    fetcher = MagicMock(side_effect=lambda client, scrape: first_cycle.set() or {})

    p = poller.DomainPoller(
        name="general",
        fetcher=fetcher,
        generator=general.generate_metrics,
        client_factory=client_factory,
        tenants=["t1"],
        interval=60.0,
    )
    p.start()
    try:
        assert first_cycle.wait(timeout=5)
        assert fetcher.call_count == 1
    finally:
        p.stop(timeout=5)


def test_start_twice_spawns_one_loop(client_factory: MagicMock):
    """Calling start() on a running poller does not add a second loop."""
    fetcher = MagicMock(return_value={})
    p = poller.DomainPoller(
        name="general",
        fetcher=fetcher,
        generator=general.generate_metrics,
        client_factory=client_factory,
        tenants=["t1"],
        interval=60.0,
    )
    p.start()
    p.start()
    try:
        running = [t for t in threading.enumerate() if t.name == "poller-general"]
        assert len(running) == 1
    finally:
        p.stop(timeout=5)


def test_scrape_not_blocked_by_running_cycle(client_factory: MagicMock):
    """collect() answers while a cycle holds the collect lock."""
    in_fetch = threading.Event()
    release = threading.Event()

    def fetcher(client, scrape):
        in_fetch.set()
        release.wait(5)
        return {"user_count": 1.0}

    p = poller.DomainPoller(
        name="general",
        fetcher=fetcher,
        generator=general.generate_metrics,
        client_factory=client_factory,
        tenants=["t1"],
        interval=60.0,
    )
    p.start()
    try:
        assert in_fetch.wait(timeout=5)
        metrics = _metrics(p)
        assert metrics["entraid_stats"].samples == []
    finally:
        release.set()
        p.stop(timeout=5)
