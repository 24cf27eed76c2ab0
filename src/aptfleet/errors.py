"""Error taxonomy shared by the compiler, signer and catalog."""

from pathlib import Path


class AptFleetError(Exception):
    """Base class for all aptfleet errors."""


class ConfigError(AptFleetError):
    """Configuration file missing or invalid."""


class PackageValidationError(AptFleetError):
    """A candidate package was rejected. It is quarantined and the compile carries on."""

    def __init__(self, path: Path, reason: str):
        super().__init__(f"{path.name}: {reason}")
        self.path = path
        self.reason = reason


class SigningError(AptFleetError):
    """Signing failed or produced a signature that does not verify."""


class KeyUnavailable(SigningError):
    """The signing key is not in the keyring, or it has expired."""


class PublishError(AptFleetError):
    """A compiled snapshot could not be swapped into the document root."""


class StoreLocked(AptFleetError):
    """Another process holds the package store lock."""


class CatalogApplyError(AptFleetError):
    """A single resource could not be reconciled on this node."""

    def __init__(self, identity: tuple[str, str], reason: str):
        kind, name = identity
        super().__init__(f"{kind}/{name}: {reason}")
        self.identity = identity
        self.reason = reason


class CatalogOwnershipError(AptFleetError):
    """A node tried to retract a catalog entry declared by another node."""


class CompileAborted(AptFleetError):
    """One or more distributions failed to compile; the others were published."""

    def __init__(self, reports: list, failures: dict[str, Exception]):
        super().__init__("; ".join(f"{name}: {error}" for name, error in failures.items()))
        self.reports = reports
        self.failures = failures
