"""Configuration models and loading logic."""

import socket
import tomllib
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from aptfleet.constants import DB_URL, DEFAULT_RELEASE
from aptfleet.errors import ConfigError

RESERVED_ARCHITECTURES = {"all", "source"}


class DistributionConfig(BaseModel):
    """A named grouping of packages with fixed architecture and component sets."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    origin: str = ""
    label: str = ""
    suite: str = ""
    architectures: frozenset[str] = frozenset({"amd64"})
    components: frozenset[str] = frozenset({"main"})
    description: str = ""
    signing_key_id: str | None = None
    auto_promote: bool = False
    not_automatic: bool = False

    @field_validator("architectures")
    @classmethod
    def _check_architectures(cls, value: frozenset[str]) -> frozenset[str]:
        if not value:
            raise ValueError("a distribution needs at least one architecture")
        if reserved := value & RESERVED_ARCHITECTURES:
            raise ValueError(f"{', '.join(sorted(reserved))} cannot be listed as an architecture")
        return value

    @field_validator("components")
    @classmethod
    def _check_components(cls, value: frozenset[str]) -> frozenset[str]:
        if not value:
            raise ValueError("a distribution needs at least one component")
        return value

    @property
    def default_component(self) -> str:
        """Component for packages whose section does not name one."""
        return "main" if "main" in self.components else sorted(self.components)[0]


class RepositoryConfig(BaseModel):
    """The published repository: where it lives, how it is signed and what it serves."""

    name: str = Field(min_length=1)
    basedir: Path
    docroot: Path | None = None
    domain: str = "localhost"
    key_id: str | None = None
    key_file: Path | None = None
    release: str = DEFAULT_RELEASE
    keep_snapshots: int = Field(default=2, ge=1)
    distributions: list[DistributionConfig] = Field(default_factory=list)

    @model_validator(mode="after")
    def _fill_defaults(self) -> "RepositoryConfig":
        if self.docroot is None:
            self.docroot = self.basedir / "public"
        if not self.distributions:
            self.distributions = [DistributionConfig(name=self.release)]

        seen: set[str] = set()
        filled = []
        for dist in self.distributions:
            if dist.name in seen:
                raise ValueError(f"distribution '{dist.name}' is configured twice")
            seen.add(dist.name)
            filled.append(
                dist.model_copy(
                    update={
                        "origin": dist.origin or self.name,
                        "label": dist.label or self.name,
                        "suite": dist.suite or dist.name,
                        "signing_key_id": dist.signing_key_id or self.key_id,
                    }
                )
            )
        self.distributions = filled
        return self

    def get_distribution(self, name: str) -> DistributionConfig:
        for dist in self.distributions:
            if dist.name == name:
                return dist
        raise ConfigError(f"Unknown distribution '{name}', configured: {[d.name for d in self.distributions]}")


class NodeConfig(BaseModel):
    """This machine's identity in the fleet and the local state it reconciles."""

    node_id: str = Field(default_factory=socket.gethostname)
    tags: frozenset[str] = frozenset()
    catalog_url: str = DB_URL
    sources_dir: Path = Path("/etc/apt/sources.list.d")
    keyrings_dir: Path = Path("/etc/apt/keyrings")
    hosts_file: Path = Path("/etc/hosts")
    refresh_command: list[str] | None = None


class ScheduleConfig(BaseModel):
    """Tick intervals, in seconds."""

    compile_interval: float = Field(default=300, gt=0)
    reconcile_interval: float = Field(default=1800, gt=0)


class Settings(BaseModel):
    """Fully loaded configuration file."""

    repository: RepositoryConfig | None = None
    node: NodeConfig = Field(default_factory=NodeConfig)
    schedule: ScheduleConfig = Field(default_factory=ScheduleConfig)

    def require_repository(self) -> RepositoryConfig:
        if self.repository is None:
            raise ConfigError("No [repository] section configured on this node")
        return self.repository


def load_settings(path: Path) -> Settings:
    """Load and validate a TOML configuration file."""
    try:
        with path.open("rb") as handle:
            raw = tomllib.load(handle)
    except FileNotFoundError as e:
        raise ConfigError(f"Configuration file not found: {path}") from e
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {path}: {e}") from e

    try:
        return Settings.model_validate(raw)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration in {path}:\n{e}") from e
