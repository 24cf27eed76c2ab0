"""Resource Catalog: a fleet-shared store of tagged, declared resources."""

import logging
from collections.abc import Iterable
from datetime import UTC, datetime

from pydantic import ValidationError
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from aptfleet.db import get_engine, init_db
from aptfleet.errors import CatalogOwnershipError, ConfigError
from aptfleet.models import CatalogEntry, Resource

logger = logging.getLogger(__name__)

# backends with INSERT ... ON CONFLICT DO UPDATE
UPSERT_DIALECTS = {"sqlite": sqlite.insert, "postgresql": postgresql.insert}


def _as_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=UTC) if value.tzinfo is None else value.astimezone(UTC)


class ResourceCatalog:
    """Upsert, retract and pull resources keyed by (kind, name).

    Declarations for the same identity resolve last-write-wins on their
    timestamp. There is no ordering across nodes beyond that.
    """

    def __init__(self, engine: Engine):
        self.engine = engine

    @classmethod
    def from_url(cls, url: str | None = None) -> "ResourceCatalog":
        engine = get_engine(url)
        init_db(engine)
        return cls(engine)

    def declare(self, resource: Resource, node_id: str, declared_at: datetime | None = None) -> bool:
        """Upsert a resource as node_id.

        The comparison with the stored declaration happens inside a single
        ``INSERT ... ON CONFLICT DO UPDATE ... WHERE`` statement, so concurrent
        declarations of one identity cannot interleave.

        Returns:
            False if a newer declaration of the same identity is already stored.
        """
        insert = UPSERT_DIALECTS.get(self.engine.dialect.name)
        if insert is None:
            raise ConfigError(f"Catalog backend {self.engine.dialect.name} is not supported")

        declared_at = _as_utc(declared_at or datetime.now(UTC))
        kind, name = resource.identity
        values = {
            "tags": sorted(resource.tags),
            "payload": resource.payload(),
            "declared_by": node_id,
            "declared_at": declared_at,
        }
        stmt = insert(CatalogEntry).values(kind=kind, name=name, **values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["kind", "name"],
            set_={column: stmt.excluded[column] for column in values},
            where=CatalogEntry.declared_at <= stmt.excluded.declared_at,
        )
        query = select(CatalogEntry.declared_by, CatalogEntry.declared_at).where(
            CatalogEntry.kind == kind, CatalogEntry.name == name
        )
        with self.engine.begin() as connection:
            connection.execute(stmt)
            # still inside the write transaction, so this is the row the upsert left behind
            stored_by, stored_at = connection.execute(query).one()

        stored_at = _as_utc(stored_at)
        if stored_at > declared_at:
            logger.info(
                f"Ignoring declaration of {kind}/{name} by {node_id}: "
                f"{stored_by} declared it later, at {stored_at.isoformat()}"
            )
            return False

        logger.debug(f"{node_id} declared {kind}/{name} for tags {sorted(resource.tags)}")
        return True

    def retract(self, kind: str, name: str, node_id: str) -> bool:
        """Delete an entry this node declared. Returns False if there was none."""
        with Session(self.engine) as session:
            entry = session.get(CatalogEntry, (kind, name), with_for_update=True)
            if entry is None:
                return False
            if entry.declared_by != node_id:
                raise CatalogOwnershipError(
                    f"{kind}/{name} was declared by {entry.declared_by}, {node_id} cannot retract it"
                )
            session.delete(entry)
            session.commit()

        logger.debug(f"{node_id} retracted {kind}/{name}")
        return True

    def pull(self, node_tags: Iterable[str]) -> list[Resource]:
        """Every resource whose tags intersect node_tags, ordered by identity. Read-only."""
        resources, malformed = self.pull_checked(node_tags)
        for identity, reason in malformed.items():
            logger.warning(f"Skipping malformed catalog entry {identity[0]}/{identity[1]}: {reason}")
        return resources

    def pull_checked(self, node_tags: Iterable[str]) -> tuple[list[Resource], dict[tuple[str, str], str]]:
        """Like :meth:`pull`, but also return the matching entries that no longer validate.

        Returns:
            The valid resources, and a reason for each malformed (kind, name).
        """
        wanted = frozenset(node_tags)
        resources: list[Resource] = []
        malformed: dict[tuple[str, str], str] = {}
        for entry in self.entries():
            if wanted.isdisjoint(entry.tags):
                continue
            try:
                resources.append(entry.to_resource())
            except ValidationError as e:
                malformed[(entry.kind, entry.name)] = "malformed catalog entry: " + "; ".join(
                    f"{'.'.join(str(part) for part in error['loc']) or 'entry'}: {error['msg']}"
                    for error in e.errors()
                )
        return resources, malformed

    def entries(self) -> list[CatalogEntry]:
        with Session(self.engine) as session:
            query = select(CatalogEntry).order_by(CatalogEntry.kind, CatalogEntry.name)
            return list(session.exec(query).all())
