from os import getenv
from pathlib import Path

DATA_DIR = Path(getenv("APTFLEET_DATA_DIR", "data")).resolve()
CONFIG_FILE = Path(getenv("APTFLEET_CONFIG", "/etc/aptfleet/aptfleet.toml"))

# set database url
if DATA_DIR.is_relative_to(Path.cwd()):
    DB_URL = f"sqlite:///{DATA_DIR.relative_to(Path.cwd()) / 'catalog.db'}"
else:
    DB_URL = f"sqlite:///{DATA_DIR / 'catalog.db'}"
DB_URL = getenv("APTFLEET_DB_URL", DB_URL)

# None means the gpg default (~/.gnupg)
GPG_HOME = getenv("APTFLEET_GPG_HOME")
GPG_PASSPHRASE_ENV = "APTFLEET_GPG_PASSPHRASE"

# Debian's own placeholder for a not-yet-targeted distribution
DEFAULT_RELEASE = "UNRELEASED"

# prefix for every file aptfleet owns on a fleet node
MANAGED_PREFIX = "aptfleet-"

NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_`%(constraint_name)s`",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

# fmt: off
ORDERED_COMPONENTS = [
    "main", "contrib", "non-free", "non-free-firmware",
    "restricted", "universe", "multiverse",
]

ORDERED_ARCHITECTURES = [
    "i386", "amd64", "amd64v3",
    "armel", "armhf", "arm64", "aarch64",
    "riscv32", "riscv64",
    "mipsel", "mips64el",
    "la64", "loongarch64",
    "powerpc", "ppc32", "ppc64el",
    "s390", "s390x",
]
# fmt: on
