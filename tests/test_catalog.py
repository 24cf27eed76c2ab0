import threading
from datetime import UTC, datetime, timedelta

import pytest
from sqlmodel import Session

from aptfleet.errors import CatalogOwnershipError
from aptfleet.models import CatalogEntry, DNSAddress, FleetNode, RepositorySource

T0 = datetime(2026, 10, 18, 9, 0, tzinfo=UTC)


def source(name="internal", tags=("web",), **kwargs) -> RepositorySource:
    fields = {"location": "https://apt.example.com", "distribution": "stable"} | kwargs
    return RepositorySource(name=name, tags=frozenset(tags), **fields)


def host(name="db1", tags=("web",), ip="10.0.0.5") -> DNSAddress:
    return DNSAddress(name=name, tags=frozenset(tags), ip=ip)


def test_pull_returns_resources_sharing_a_tag(catalog):
    catalog.declare(source("internal", tags=("web", "db")), "fleet-a")
    catalog.declare(source("webonly", tags=("web",)), "fleet-a")
    catalog.declare(host("db1", tags=("db",)), "fleet-b")
    catalog.declare(host("cache1", tags=("cache",)), "fleet-b")

    fleet_a = FleetNode(node_id="fleet-a", tags=frozenset({"web"}))
    fleet_b = FleetNode(node_id="fleet-b", tags=frozenset({"db"}))

    pulled_a = catalog.pull(fleet_a.tags)
    pulled_b = catalog.pull(fleet_b.tags)

    assert [r.identity for r in pulled_a] == [("repository_source", "internal"), ("repository_source", "webonly")]
    assert [r.identity for r in pulled_b] == [("dns_address", "db1"), ("repository_source", "internal")]
    assert all(fleet_a.matches(r) for r in pulled_a)
    assert catalog.pull(set()) == []


def test_pull_returns_typed_resources(catalog):
    catalog.declare(source(components=("main", "contrib"), include_source=True), "fleet-a")

    (resource,) = catalog.pull({"web"})

    assert isinstance(resource, RepositorySource)
    assert resource == source(components=("main", "contrib"), include_source=True)


def test_newer_declaration_wins(catalog):
    assert catalog.declare(host(ip="10.0.0.5"), "fleet-a", T0)
    assert catalog.declare(host(ip="10.0.0.6"), "fleet-b", T0 + timedelta(minutes=1))
    assert not catalog.declare(host(ip="10.0.0.7"), "fleet-a", T0)

    (resource,) = catalog.pull({"web"})
    assert resource.ip == "10.0.0.6"
    (entry,) = catalog.entries()
    assert entry.declared_by == "fleet-b"
    assert entry.declared_at_utc == T0 + timedelta(minutes=1)


def test_equal_timestamp_overwrites(catalog):
    catalog.declare(host(ip="10.0.0.5"), "fleet-a", T0)
    assert catalog.declare(host(ip="10.0.0.9"), "fleet-a", T0)

    assert catalog.pull({"web"})[0].ip == "10.0.0.9"


def test_redeclare_moves_tags(catalog):
    catalog.declare(host(tags=("web",)), "fleet-a", T0)
    catalog.declare(host(tags=("db",)), "fleet-a", T0 + timedelta(seconds=1))

    assert catalog.pull({"web"}) == []
    assert [r.name for r in catalog.pull({"db"})] == ["db1"]


def test_only_the_declaring_node_can_retract(catalog):
    catalog.declare(host(), "fleet-a")

    with pytest.raises(CatalogOwnershipError):
        catalog.retract("dns_address", "db1", "fleet-b")
    assert catalog.retract("dns_address", "db1", "fleet-a")
    assert not catalog.retract("dns_address", "db1", "fleet-a")
    assert catalog.pull({"web"}) == []


def test_malformed_entry_is_skipped(catalog):
    catalog.declare(host("db1"), "fleet-a")
    with Session(catalog.engine) as session:
        session.add(
            CatalogEntry(
                kind="dns_address", name="broken", tags=["web"], payload={}, declared_by="fleet-a", declared_at=T0
            )
        )
        session.commit()

    assert [r.name for r in catalog.pull({"web"})] == ["db1"]
    assert len(catalog.entries()) == 2


def test_concurrent_declarations_keep_the_newest(catalog):
    errors = []

    def declare(barrier, name, ip, declared_at):
        barrier.wait()
        try:
            catalog.declare(host(name, ip=ip), f"node-{ip}", declared_at)
        except Exception as e:
            errors.append(e)

    for n in range(20):
        barrier = threading.Barrier(2, timeout=5)
        threads = [
            threading.Thread(target=declare, args=(barrier, f"h{n:02d}", "10.0.0.1", T0 + timedelta(seconds=1))),
            threading.Thread(target=declare, args=(barrier, f"h{n:02d}", "10.0.0.2", T0 + timedelta(seconds=2))),
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

    assert errors == []
    pulled = catalog.pull({"web"})
    assert len(pulled) == 20
    assert {r.ip for r in pulled} == {"10.0.0.2"}
    assert {e.declared_by for e in catalog.entries()} == {"node-10.0.0.2"}


def test_pull_checked_reports_malformed_entries(catalog):
    catalog.declare(source("internal"), "fleet-a")
    with Session(catalog.engine) as session:
        entry = session.get(CatalogEntry, ("repository_source", "internal"))
        entry.payload = {"location": "https://apt.example.com"}
        session.add(entry)
        session.commit()

    resources, malformed = catalog.pull_checked({"web"})

    assert resources == []
    assert list(malformed) == [("repository_source", "internal")]
    assert "distribution" in malformed[("repository_source", "internal")]
