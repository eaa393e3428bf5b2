"""
Batch orchestration of the pipeline over many packages.
"""

from __future__ import annotations

import copy
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Iterable, List, Optional, Sequence

from tqdm import tqdm

from .allocator import RevisionAllocator
from .bumper import DependencyBumper
from .errors import DepUpError
from .interfaces import PackageRegistry
from .ledger import IntegrityLedger
from .models import BatchItem, ItemState, PackageRef, PipelineOptions, PipelineResult
from .pipeline import DepUpPipeline, read_package_json
from .versioning import highest


logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 5


def plan_groups(items: Sequence[BatchItem], size: int) -> List[List[BatchItem]]:
    """Split items into groups of at most ``size``.

    Two items for the same package and base version never share a group;
    the later one moves to a following group.
    """
    if size < 1:
        raise ValueError("Group size must be at least 1")
    pending = list(items)
    groups: List[List[BatchItem]] = []
    while pending:
        group: List[BatchItem] = []
        seen = set()
        deferred: List[BatchItem] = []
        for item in pending:
            partition = item.package_ref.partition
            if len(group) < size and partition not in seen:
                group.append(item)
                seen.add(partition)
            else:
                deferred.append(item)
        groups.append(group)
        pending = deferred
    return groups


class BatchOrchestrator:
    """Run a per-package callable over a worklist in bounded concurrent groups."""

    def __init__(
        self,
        run_one: Callable[[PackageRef], PipelineResult],
        concurrency: int = DEFAULT_CONCURRENCY,
        pacing_delay: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
        show_progress: bool = False,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.run_one = run_one
        self.concurrency = concurrency
        self.pacing_delay = pacing_delay
        self.sleep = sleep
        self.show_progress = show_progress

    def run(self, refs: Iterable[PackageRef]) -> List[BatchItem]:
        items = [BatchItem(package_ref=ref) for ref in refs]
        groups = plan_groups(items, self.concurrency)
        logger.info("Processing %d packages in %d groups", len(items), len(groups))

        with tqdm(total=len(items), desc="Processing packages", disable=not self.show_progress) as pbar:
            for position, group in enumerate(groups):
                if position > 0 and self.pacing_delay > 0:
                    self.sleep(self.pacing_delay)
                with ThreadPoolExecutor(max_workers=len(group)) as executor:
                    for _ in executor.map(self._run_item, group):
                        pbar.update(1)

        succeeded = sum(1 for item in items if item.state is ItemState.SUCCEEDED)
        logger.info("Processed %d packages, %d failed", succeeded, len(items) - succeeded)
        return items

    def _run_item(self, item: BatchItem) -> BatchItem:
        item.state = ItemState.RUNNING
        try:
            item.result = self.run_one(item.package_ref)
        except Exception as e:
            # Isolate failures so sibling items keep running.
            item.state = ItemState.FAILED
            item.error = str(e) or type(e).__name__
            item.result = getattr(e, "pipeline_result", None)
            logger.warning("Failed to process %s: %s", item.package_ref.spec, item.error)
            return item
        if item.result is not None and not item.result.ok:
            item.state = ItemState.FAILED
            item.error = item.result.error
        else:
            item.state = ItemState.SUCCEEDED
        return item


def pipeline_runner(
    pipeline: DepUpPipeline, options: PipelineOptions
) -> Callable[[PackageRef], PipelineResult]:
    def run_one(ref: PackageRef) -> PipelineResult:
        return pipeline.process(ref.spec, options)

    return run_one


def discover_worklist(
    registry: PackageRegistry,
    names: Iterable[str],
    ledger: IntegrityLedger,
    limit: Optional[int] = None,
    timeout: Optional[float] = None,
) -> List[PackageRef]:
    """Latest versions of ``names`` that have no recorded revisions yet."""
    worklist: List[PackageRef] = []
    for name in names:
        if limit is not None and len(worklist) >= limit:
            break
        try:
            latest = registry.latest_version(name, timeout=timeout)
        except DepUpError as e:
            logger.warning("Could not fetch %s: %s", name, e)
            continue
        if latest in ledger.base_versions(name):
            logger.info("%s@%s is up to date", name, latest)
            continue
        logger.info("New version available: %s@%s", name, latest)
        worklist.append(PackageRef(name, latest))
    return worklist


def needs_dependency_update(
    ref: PackageRef,
    allocator: RevisionAllocator,
    registry: PackageRegistry,
    timeout: float = 300.0,
) -> bool:
    """Whether the newest revision of ``ref`` has dependencies with newer releases."""
    indices = allocator.existing_indices(ref)
    if not indices:
        return True
    revision_dir = allocator.revision_dir(ref, indices[-1])
    try:
        package_json = read_package_json(revision_dir)
    except (OSError, ValueError):
        return False
    result = DependencyBumper(registry, timeout=timeout).bump(copy.deepcopy(package_json))
    return result.updated_count > 0


def sync_worklist(
    registry: PackageRegistry,
    ledger: IntegrityLedger,
    allocator: RevisionAllocator,
    limit: Optional[int] = None,
    timeout: float = 300.0,
) -> List[PackageRef]:
    """Existing packages that have a new upstream version or stale dependencies."""
    worklist: List[PackageRef] = []
    for name in ledger.packages():
        if limit is not None and len(worklist) >= limit:
            break
        current = highest(ledger.base_versions(name))
        if current is None:
            continue
        try:
            latest = registry.latest_version(name, timeout=timeout)
        except DepUpError as e:
            logger.warning("Could not sync %s: %s", name, e)
            continue
        if latest != current:
            logger.info("Version update: %s %s -> %s", name, current, latest)
            worklist.append(PackageRef(name, latest))
        elif needs_dependency_update(PackageRef(name, current), allocator, registry, timeout):
            logger.info("Dependencies need updating: %s@%s", name, current)
            worklist.append(PackageRef(name, current))
        else:
            logger.info("%s is up to date", name)
    return worklist
