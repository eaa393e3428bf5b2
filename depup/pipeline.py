"""
Single-package pipeline: fetch, allocate, bump, test, publish, record.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Dict, Optional

from .allocator import RevisionAllocator
from .bumper import DependencyBumper
from .config import DepUpConfig
from .errors import DepUpError
from .installer import PackageTester
from .interfaces import PackageRegistry
from .ledger import IntegrityLedger
from .models import (
    PackageRef,
    PipelineOptions,
    PipelineResult,
    Revision,
    RevisionKey,
    RevisionStatus,
)
from .publisher import PublishGate
from .time_utils import format_timestamp
from .versioning import produce_version


logger = logging.getLogger(__name__)


def read_package_json(directory: Path) -> Dict:
    with open(Path(directory) / "package.json", "r", encoding="utf-8") as f:
        return json.load(f)


def write_package_json(directory: Path, package_json: Dict) -> None:
    with open(Path(directory) / "package.json", "w", encoding="utf-8") as f:
        json.dump(package_json, f, indent=2)
        f.write("\n")


class DepUpPipeline:
    """Run every step for one package spec, strictly in order."""

    def __init__(
        self,
        config: DepUpConfig,
        registry: PackageRegistry,
        ledger: IntegrityLedger,
        tester: Optional[PackageTester] = None,
        gate: Optional[PublishGate] = None,
        allocator: Optional[RevisionAllocator] = None,
    ) -> None:
        self.config = config
        self.registry = registry
        self.ledger = ledger
        self.tester = tester
        self.gate = gate
        self.allocator = allocator or RevisionAllocator(config.packages_dir, ledger=ledger)

    def process(self, spec: str, options: Optional[PipelineOptions] = None) -> PipelineResult:
        """Produce one new revision of ``spec``.

        Resolution errors propagate before anything is written. Once a
        revision is allocated, any error records it as ``failed`` in the
        ledger and is then re-raised with the partial result attached as
        ``pipeline_result``.
        """
        options = options or PipelineOptions(timeout=self.config.timeout)
        timeout = options.timeout

        logger.info("Fetching package manifest for %s", spec)
        manifest = self.registry.resolve_manifest(spec, timeout=timeout)
        ref = PackageRef(manifest.name, manifest.version)
        scoped_name = self.config.scoped_name(ref.name)
        result = PipelineResult(package_ref=ref, scoped_name=scoped_name)
        logger.info("Processing %s -> %s", ref.spec, scoped_name)
        logger.debug(
            "%d dependencies, %d devDependencies",
            len(manifest.dependencies), len(manifest.dev_dependencies),
        )

        if options.dry_run:
            index = self.allocator.next_index(ref)
            logger.info(
                "Dry run: would create %s as %s@%s",
                self.allocator.revision_dir(ref, index),
                scoped_name,
                produce_version(ref.base_version, index),
            )
            return result

        index = self.allocator.allocate(ref)
        target = self.allocator.revision_dir(ref, index)
        revision = Revision(ref, index, RevisionStatus.PREPARED, format_timestamp())
        result.revision = revision
        result.path = target
        key = RevisionKey.for_ref(ref, index)

        try:
            status = self._run_steps(ref, revision, target, options, result)
        except (DepUpError, OSError, ValueError) as e:
            result.revision = revision.with_status(RevisionStatus.FAILED, format_timestamp())
            result.error = str(e)
            if options.publish:
                result.published = False
            self.ledger.record_outcome(
                key, revision.produced_version, RevisionStatus.FAILED, result.revision.timestamp
            )
            logger.error("Failed %s@%s: %s", scoped_name, revision.produced_version, e)
            e.pipeline_result = result
            raise

        result.revision = revision.with_status(status, format_timestamp())
        self.ledger.record_outcome(
            key, revision.produced_version, status, result.revision.timestamp
        )
        logger.info(
            "Prepared %s@%s in %s (%s)",
            scoped_name, revision.produced_version, target, status.value,
        )
        return result

    def _run_steps(
        self,
        ref: PackageRef,
        revision: Revision,
        target: Path,
        options: PipelineOptions,
        result: PipelineResult,
    ) -> RevisionStatus:
        logger.info("Downloading and extracting %s", ref.spec)
        self.registry.extract(ref.spec, target, timeout=options.timeout)

        package_json = read_package_json(target)
        package_json["name"] = result.scoped_name
        package_json["version"] = revision.produced_version

        if options.bump_deps:
            bump = DependencyBumper(self.registry, timeout=options.timeout).bump(package_json)
            result.dependencies_updated = bump.updated_count
            result.warnings.extend(bump.warnings)

        write_package_json(target, package_json)

        if options.test:
            if self.tester is None:
                raise DepUpError("Testing requested but no package tester is configured")
            report = self.tester.test(target, result.scoped_name)
            result.test_passed = report.passed
            result.warnings.extend(report.warnings)
            if not report.passed:
                logger.warning(
                    "Tests failed for %s@%s", result.scoped_name, revision.produced_version
                )

        if not options.publish:
            return RevisionStatus.PREPARED
        if self.gate is None:
            raise DepUpError("Publishing requested but no publish gate is configured")
        status = self.gate.run(
            target,
            package_json,
            revision.index,
            result.dependencies_updated,
            options.publish,
        )
        result.published = status is RevisionStatus.PUBLISHED
        return status
