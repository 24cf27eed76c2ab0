"""Declarative resources broadcast through the catalog."""

from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class ResourceBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: str
    name: str = Field(min_length=1)
    tags: frozenset[str] = frozenset()

    @property
    def identity(self) -> tuple[str, str]:
        return (self.kind, self.name)

    def payload(self) -> dict:
        """Kind-specific fields, as stored in the catalog."""
        return self.model_dump(mode="json", exclude={"kind", "name", "tags"})


class RepositorySource(ResourceBase):
    """An APT source every matching node should configure."""

    kind: Literal["repository_source"] = "repository_source"
    location: str
    distribution: str
    components: tuple[str, ...] = ("main",)
    key_id: str | None = None
    key_source: str | None = None
    include_source: bool = False


class DNSAddress(ResourceBase):
    """A host name to address mapping every matching node should resolve locally."""

    kind: Literal["dns_address"] = "dns_address"
    ip: str
    hostname: str | None = None
    aliases: tuple[str, ...] = ()

    @property
    def fqdn(self) -> str:
        return self.hostname or self.name


Resource = Annotated[RepositorySource | DNSAddress, Field(discriminator="kind")]

RESOURCE_ADAPTER: TypeAdapter[Resource] = TypeAdapter(Resource)
RESOURCE_KINDS = ("repository_source", "dns_address")


class FleetNode(BaseModel):
    """A managed machine; its tags decide which resources it pulls."""

    node_id: str
    tags: frozenset[str] = frozenset()

    def matches(self, resource: ResourceBase) -> bool:
        return not self.tags.isdisjoint(resource.tags)
