import logging
from datetime import UTC, datetime

import sqlmodel as sm
from sqlmodel import JSON, Field, SQLModel

from aptfleet.constants import NAMING_CONVENTION
from aptfleet.models.resources import RESOURCE_ADAPTER, Resource

logger = logging.getLogger(__name__)

# must be set before any table is declared on this metadata
SQLModel.metadata.naming_convention = NAMING_CONVENTION


class CatalogEntry(SQLModel, table=True):
    """One declared resource, identified by (kind, name)."""

    __tablename__ = "catalog_entry"

    kind: str = Field(primary_key=True)
    name: str = Field(primary_key=True)
    tags: list[str] = Field(sa_type=JSON, default_factory=list)
    payload: dict = Field(sa_type=JSON, default_factory=dict)
    declared_by: str = Field(index=True)
    declared_at: datetime = Field(
        sa_column=sm.Column("declared_at", sm.DateTime(timezone=True), nullable=False),
    )

    @property
    def declared_at_utc(self) -> datetime:
        # SQLite hands back naive datetimes; everything is stored in UTC
        if self.declared_at.tzinfo is None:
            return self.declared_at.replace(tzinfo=UTC)
        return self.declared_at.astimezone(UTC)

    def to_resource(self) -> Resource:
        return RESOURCE_ADAPTER.validate_python(
            {**self.payload, "kind": self.kind, "name": self.name, "tags": self.tags}
        )
