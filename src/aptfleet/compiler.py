"""Repository Compiler: turn intake uploads into a signed, atomically published snapshot."""

import logging
import shutil
from datetime import UTC, datetime
from itertools import product

from aptfleet.config import DistributionConfig, RepositoryConfig
from aptfleet.errors import (
    AptFleetError,
    CompileAborted,
    KeyUnavailable,
    PackageValidationError,
    SigningError,
    StoreLocked,
)
from aptfleet.metadata import (
    group_path,
    index_digest,
    read_packages,
    read_release,
    render_indices,
    render_release,
)
from aptfleet.models import CompileReport, IndexEntry, PackageFile, QuarantineRecord, RepositorySnapshot
from aptfleet.models.packages import GroupKey
from aptfleet.signing import Signer
from aptfleet.store import PackageStore
from aptfleet.utils import try_parse_date

logger = logging.getLogger(__name__)

ARCH_ALL = "all"


class RepositoryCompiler:
    """Compiles the configured distributions of one repository."""

    def __init__(self, config: RepositoryConfig, signer: Signer, store: PackageStore | None = None):
        self.config = config
        self.signer = signer
        self.store = store or PackageStore.from_config(config)

    def compile_all(self) -> list[CompileReport]:
        """Compile every distribution; a failure in one does not stop the others.

        Raises:
            KeyUnavailable: the signing key is missing or expired. This is not retried.
            StoreLocked: another compile holds the store.
            CompileAborted: some distributions failed; it carries the reports of the rest.
        """
        reports = []
        failures: dict[str, Exception] = {}
        for dist in self.config.distributions:
            try:
                reports.append(self.compile(dist))
            except (StoreLocked, KeyUnavailable):
                raise
            except (AptFleetError, OSError) as e:
                logger.error(f"Compile of {dist.name} aborted, previous snapshot stays live: {e}")
                failures[dist.name] = e
        if failures:
            raise CompileAborted(reports, failures)
        return reports

    def compile(self, distribution: DistributionConfig | str) -> CompileReport:
        """Run one compile pass for a distribution.

        Returns:
            The report of the pass; ``report.snapshot`` is the live snapshot afterwards.

        Raises:
            SigningError: the release could not be signed; nothing was published.
            PublishError: the snapshot could not be swapped in; nothing was published.
            StoreLocked: another compile holds the store.
            OSError: transient filesystem failure, retry on the next tick.
        """
        dist = self.config.get_distribution(distribution) if isinstance(distribution, str) else distribution
        with self.store.lock():
            return self._compile(dist)

    def _compile(self, dist: DistributionConfig) -> CompileReport:
        self.store.ensure_layout(dist.name)
        live = self.load_snapshot(dist)
        index = self._base_index(dist, live)

        scan = self.store.scan_intake(dist)
        report = CompileReport(distribution=dist.name, pending=scan.pending)
        for error in scan.rejected:
            self._quarantine(dist, error, report)

        for package in sorted(scan.candidates, key=lambda p: p.path.name):
            try:
                groups = self._validate(dist, package, index)
                if groups:
                    self.store.add_to_pool(package)
            except PackageValidationError as e:
                self._quarantine(dist, e, report)
                continue

            if not groups:
                logger.debug(f"{package.path.name} is already published in {dist.name}, absorbing it")
                report.duplicates.append(package.path)
                continue

            entry = IndexEntry.from_package(package)
            for group in groups:
                index[group].append(entry)
            report.accepted.append(package.path)
            logger.info(f"Accepted {package.name} {package.version} ({package.architecture}) into {dist.name}")

        for entries in index.values():
            entries.sort(key=IndexEntry.sort_key)

        files = render_indices(index)
        digest = index_digest(dist, files)
        if live is not None and live.digest == digest:
            logger.debug(f"{dist.name} is unchanged, keeping snapshot {digest[:12]}")
            report.snapshot = live
        else:
            report.snapshot = self._publish(dist, index, files, digest)
            report.changed = True

        # intake is only cleared once the new snapshot is live
        self.store.discard(report.accepted + report.duplicates)
        self.store.discard(path for upload in scan.uploads for path in upload.files if path.suffix != ".deb")
        self.store.discard(upload.manifest for upload in scan.uploads)

        self.store.write_report(report)
        if report.quarantined:
            logger.warning(f"{dist.name}: {len(report.quarantined)} file(s) quarantined")
        return report

    def _base_index(self, dist: DistributionConfig, live: RepositorySnapshot | None) -> dict[GroupKey, list[IndexEntry]]:
        index: dict[GroupKey, list[IndexEntry]] = {
            group: [] for group in product(sorted(dist.components), sorted(dist.architectures))
        }
        if live is not None:
            for group, entries in live.index.items():
                if group in index:
                    index[group].extend(entries)
                elif entries:
                    logger.warning(f"{dist.name}: dropping {group_path(*group)}, no longer configured")
        return index

    def _validate(
        self, dist: DistributionConfig, package: PackageFile, index: dict[GroupKey, list[IndexEntry]]
    ) -> list[GroupKey]:
        """Return the groups the package must be added to; empty if it is already there."""
        if package.distribution not in {dist.name, dist.suite}:
            raise PackageValidationError(
                package.path, f"uploaded for {package.distribution}, not {dist.name}"
            )
        if package.component not in dist.components:
            raise PackageValidationError(
                package.path,
                f"component {package.component} is not one of {sorted(dist.components)}",
            )
        if package.architecture == ARCH_ALL:
            architectures = sorted(dist.architectures)
        elif package.architecture in dist.architectures:
            architectures = [package.architecture]
        else:
            raise PackageValidationError(
                package.path,
                f"architecture {package.architecture} is not one of {sorted(dist.architectures)}",
            )

        groups = []
        for architecture in architectures:
            group = (package.component, architecture)
            for entry in index[group]:
                if entry.sha256 == package.sha256:
                    break
                # an "all" build and a native build of one version would share this index
                if (entry.name, entry.version) == (package.name, package.version):
                    raise PackageValidationError(
                        package.path,
                        f"{package.name} {package.version} ({entry.architecture}) is already "
                        f"published in {dist.name}/{group_path(*group)} with different contents",
                    )
            else:
                groups.append(group)
        return groups

    def _quarantine(self, dist: DistributionConfig, error: PackageValidationError, report: CompileReport) -> None:
        target = self.store.quarantine(dist.name, error.path, error.reason)
        report.quarantined.append(QuarantineRecord(path=target, reason=error.reason))

    def _publish(
        self,
        dist: DistributionConfig,
        index: dict[GroupKey, list[IndexEntry]],
        files: dict[str, bytes],
        digest: str,
    ) -> RepositorySnapshot:
        key_id = dist.signing_key_id
        if not key_id:
            raise KeyUnavailable(f"No signing key configured for {dist.name}")

        date = datetime.now(UTC).replace(microsecond=0)
        release = render_release(dist, files, date)
        signature = self.signer.sign(release, key_id)
        inrelease = self.signer.clearsign(release, key_id)
        if not self.signer.verify(release, signature):
            raise SigningError(f"Signature made with {key_id} for {dist.name} does not verify")

        staging = self.store.staging_dir(dist.name, digest)
        final = self.store.snapshot_dir(dist.name, digest)
        try:
            if staging.exists():
                shutil.rmtree(staging)
            for name, data in files.items():
                path = staging / name
                path.parent.mkdir(parents=True, exist_ok=True)
                path.write_bytes(data)
            (staging / "Release").write_bytes(release)
            (staging / "Release.gpg").write_text(signature, encoding="utf-8")
            (staging / "InRelease").write_text(inrelease, encoding="utf-8")

            if final.exists():
                shutil.rmtree(final)
            staging.rename(final)
        except BaseException:
            shutil.rmtree(staging, ignore_errors=True)
            raise

        self.store.swap_live(dist.name, final)
        logger.info(f"Published {dist.name} snapshot {digest[:12]}")
        self.store.prune_snapshots(dist.name, keep=self.config.keep_snapshots)

        return RepositorySnapshot(
            distribution_name=dist.name,
            index=index,
            release=release.decode("utf-8"),
            metadata_signature=signature,
            digest=digest,
            date=date,
            path=final,
        )

    def load_snapshot(self, distribution: DistributionConfig | str) -> RepositorySnapshot | None:
        """Read the live snapshot of a distribution back from the published tree."""
        dist = self.config.get_distribution(distribution) if isinstance(distribution, str) else distribution
        path = self.store.live_snapshot(dist.name)
        if path is None:
            return None

        index: dict[GroupKey, list[IndexEntry]] = {}
        for packages in sorted(path.glob("*/binary-*/Packages")):
            component = packages.parent.parent.name
            architecture = packages.parent.name.removeprefix("binary-")
            index[(component, architecture)] = list(read_packages(packages))

        release = read_release(path / "Release")
        return RepositorySnapshot(
            distribution_name=dist.name,
            index=index,
            release=(path / "Release").read_text(encoding="utf-8"),
            metadata_signature=(path / "Release.gpg").read_text(encoding="utf-8"),
            digest=path.name,
            date=try_parse_date(release.get("Date")),
            path=path,
        )
