"""Publisher: the public key, the static file server vhost and its access log schema.

Serving itself is left to Apache; this module only lays out what it serves and
how it logs, in the JSON record format the log shipper expects.
"""

import logging
from datetime import datetime
from pathlib import Path

from dateutil.parser import parse as parse_date
from pydantic import BaseModel, ConfigDict, Field, field_validator

from aptfleet.config import RepositoryConfig
from aptfleet.errors import ConfigError
from aptfleet.signing import Signer
from aptfleet.utils import atomic_write

logger = logging.getLogger(__name__)

# Apache mod_log_config format producing one AccessLogRecord per line
ACCESS_LOG_FORMAT = (
    '{ "@timestamp": "%{%Y-%m-%dT%H:%M:%S%z}t", "@message": "%r", "@fields": { '
    '"user-agent": "%{User-agent}i", "client": "%a", "duration_usec": %D, "duration_sec": %T, '
    '"status": %s, "request_path": "%U", "request": "%U%q", "method": "%m", "referrer": "%{Referer}i" } }'
)
ACCESS_LOG_NICKNAME = "aptfleet_json"

VHOST_TEMPLATE = """\
# Managed by aptfleet, do not edit.
<VirtualHost *:80>
    ServerName {domain}
    DocumentRoot {docroot}

    <Directory {docroot}>
        Options Indexes FollowSymLinks
        AllowOverride None
        Require all granted
    </Directory>

    LogFormat "{log_format}" {nickname}
    CustomLog {access_log} {nickname}
    ErrorLog {error_log}
</VirtualHost>
"""


class AccessLogFields(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_agent: str = Field(alias="user-agent")
    client: str
    duration_usec: int
    duration_sec: int
    status: int
    request_path: str
    request: str
    method: str
    referrer: str


class AccessLogRecord(BaseModel):
    """One access log line, as shipped downstream."""

    model_config = ConfigDict(populate_by_name=True)

    timestamp: datetime = Field(alias="@timestamp")
    message: str = Field(alias="@message")
    fields: AccessLogFields = Field(alias="@fields")

    @field_validator("timestamp", mode="before")
    @classmethod
    def _parse_timestamp(cls, value):
        # Apache writes offsets as +0000, which ISO 8601 parsers disagree on
        if isinstance(value, str):
            return parse_date(value)
        return value

    @classmethod
    def from_line(cls, line: str) -> "AccessLogRecord":
        return cls.model_validate_json(line)

    def to_line(self) -> str:
        return self.model_dump_json(by_alias=True)


class Publisher:
    """Exposes the compiled tree and the repository public key under the document root."""

    def __init__(self, config: RepositoryConfig, signer: Signer | None = None):
        self.config = config
        self.signer = signer

    @property
    def key_path(self) -> Path:
        return self.config.docroot / f"{self.config.name}.gpg"

    def _key_material(self) -> bytes:
        if self.config.key_file is not None:
            try:
                return self.config.key_file.read_bytes()
            except FileNotFoundError as e:
                raise ConfigError(f"Public key file not found: {self.config.key_file}") from e
        if self.signer is not None and self.config.key_id:
            return self.signer.public_key(self.config.key_id).encode("utf-8")
        raise ConfigError("Neither key_file nor key_id is configured, cannot publish a public key")

    def publish_key(self) -> Path:
        """Write the public key to {docroot}/{name}.gpg, leaving it untouched if unchanged."""
        material = self._key_material()
        path = self.key_path
        if path.is_file() and path.read_bytes() == material:
            logger.debug(f"Public key at {path} is up to date")
            return path
        atomic_write(path, material)
        logger.info(f"Published public key to {path}")
        return path

    def render_vhost(self, access_log: Path | None = None, error_log: Path | None = None) -> str:
        log_dir = Path("/var/log/apache2")
        return VHOST_TEMPLATE.format(
            domain=self.config.domain,
            docroot=self.config.docroot,
            log_format=ACCESS_LOG_FORMAT.replace('"', '\\"'),
            nickname=ACCESS_LOG_NICKNAME,
            access_log=access_log or log_dir / f"{self.config.domain}_access.json",
            error_log=error_log or log_dir / f"{self.config.domain}_error.log",
        )

    def write_vhost(self, path: Path, **kwargs) -> Path:
        atomic_write(path, self.render_vhost(**kwargs))
        logger.info(f"Wrote vhost for {self.config.domain} to {path}")
        return path
