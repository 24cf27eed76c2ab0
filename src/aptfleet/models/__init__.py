"""Expose data models."""

from .catalog import CatalogEntry
from .packages import CompileReport, IndexEntry, PackageFile, QuarantineRecord, RepositorySnapshot
from .resources import DNSAddress, FleetNode, RepositorySource, Resource

__all__ = [
    "CatalogEntry",
    "CompileReport",
    "DNSAddress",
    "FleetNode",
    "IndexEntry",
    "PackageFile",
    "QuarantineRecord",
    "RepositorySnapshot",
    "RepositorySource",
    "Resource",
]
