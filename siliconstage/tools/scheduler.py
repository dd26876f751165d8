"""
Scheduler - decides which stages are dirty and runs them under license limits.

Dirtiness is a forward pass over the topological order: a stage re-runs when
it never succeeded, when anything it consumed or produced changed since its
last successful run, when its constraint view or tool definition changed, or
when any stage it depends on is dirty. Clean stages are carried into the new
manifest untouched.
"""

import logging
import os
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set, Tuple

from siliconstage.config import (
    BACKOFF_MAX_SEC,
    BACKOFF_START_SEC,
    DEFAULT_MAX_PARALLEL,
    POLL_INTERVAL_SEC,
    RESOURCE_WAIT_SEC,
    get_state_dir,
)
from siliconstage.errors import MissingSource, ResourceUnavailable
from siliconstage.graph.graph import StageGraph
from siliconstage.state.state import (
    BASE_PUBLISHER,
    SOURCE_STAGE,
    FailureType,
    InvocationStatus,
    RunStatus,
    StageDefinition,
    StageStatus,
)
from siliconstage.tools.artifact_store import ArtifactStore
from siliconstage.tools.constraint_set import ConstraintSet, diff_directives, fingerprint
from siliconstage.tools.run_manifest import RunManifest, StageRecord
from siliconstage.tools.tool_invoker import InvocationResult, ToolInvoker, tool_fingerprint, validate_command_template

logger = logging.getLogger(__name__)

ARTIFACTS_DIRNAME = "artifacts"
RUNS_DIRNAME = "runs"
CONSTRAINTS_FILENAME = "constraints.yaml"

# Internal license class shared by every constraint-publishing stage, so the
# ledger only ever has one writer at a time.
CONSTRAINT_PUBLISH_CLASS = "@constraints"


@dataclass
class SchedulerLimits:
    max_parallel: int = DEFAULT_MAX_PARALLEL
    licenses: Dict[str, int] = field(default_factory=dict)
    resource_wait_sec: float = RESOURCE_WAIT_SEC
    backoff_start_sec: float = BACKOFF_START_SEC
    backoff_max_sec: float = BACKOFF_MAX_SEC
    poll_interval_sec: float = POLL_INTERVAL_SEC

    def backoff(self, attempt: int) -> float:
        return min(self.backoff_max_sec, self.backoff_start_sec * (2 ** max(0, attempt - 1)))


class LicensePool:
    """Counts busy slots per license class. Classes without a limit are unbounded."""

    def __init__(self, limits: Dict[str, int]):
        self.limits = dict(limits)
        self._in_use: Dict[str, int] = {}
        self._lock = threading.Lock()

    def acquire(self, *classes: str) -> None:
        """Take one slot of every class, or none at all."""
        with self._lock:
            for cls in classes:
                limit = self.limits.get(cls)
                if limit is not None and self._in_use.get(cls, 0) >= limit:
                    raise ResourceUnavailable(cls, f"{self._in_use.get(cls, 0)}/{limit} slots busy")
            for cls in classes:
                self._in_use[cls] = self._in_use.get(cls, 0) + 1

    def release(self, *classes: str) -> None:
        with self._lock:
            for cls in classes:
                self._in_use[cls] = max(0, self._in_use.get(cls, 0) - 1)

    def in_use(self, cls: str) -> int:
        with self._lock:
            return self._in_use.get(cls, 0)


class Scheduler:
    def __init__(
        self,
        graph: StageGraph,
        workspace: str,
        store: Optional[ArtifactStore] = None,
        constraints: Optional[ConstraintSet] = None,
        limits: Optional[SchedulerLimits] = None,
        base_constraints: Optional[Dict] = None,
        variables: Optional[Dict[str, str]] = None,
        flow_name: str = "flow",
        invoker: Optional[ToolInvoker] = None,
    ):
        self.graph = graph
        self.order = graph.validate()
        self.variables = dict(variables or {})
        for name in self.order:
            validate_command_template(graph.stage(name), self.variables)

        self.workspace = os.path.abspath(workspace)
        state_dir = get_state_dir(self.workspace)
        self.store = store or ArtifactStore(os.path.join(state_dir, ARTIFACTS_DIRNAME))
        self.constraints = constraints or ConstraintSet(os.path.join(state_dir, CONSTRAINTS_FILENAME))
        self.runs_root = os.path.join(state_dir, RUNS_DIRNAME)
        self.limits = limits or SchedulerLimits()
        self.base_constraints = dict(base_constraints or {})
        self.flow_name = flow_name
        self.invoker = invoker or ToolInvoker(self.workspace, self.store, self.constraints, variables=self.variables)
        self._cancel = self.invoker.cancel_event

        self.statuses: Dict[str, StageStatus] = {}
        self._pending: List[str] = []
        self._running: Dict[Future, Tuple[str, Tuple[str, ...]]] = {}
        self._ready_since: Dict[str, float] = {}
        self._not_before: Dict[str, float] = {}
        self._retries: Dict[str, int] = {}

    def cancel(self) -> None:
        """Stop admitting stages and terminate the ones in flight."""
        logger.warning("Cancelling flow run")
        self._cancel.set()

    def _visible_publishers(self, name: str) -> Set[str]:
        return {BASE_PUBLISHER} | self.graph.ancestors_of(name)

    def _constraints_hash(self, name: str) -> str:
        return fingerprint(self.constraints.resolve(publishers=self._visible_publishers(name)))

    def refresh_sources(self) -> None:
        for kind, path in sorted(self.graph.sources.items()):
            full = path if os.path.isabs(path) else os.path.join(self.workspace, path)
            if not os.path.isfile(full):
                raise MissingSource(kind, full)
            self.store.ingest(SOURCE_STAGE, kind, full)

    def reconcile_base_constraints(self) -> Optional[int]:
        """Publish the flow's own constraints if they differ from the ledger's @base view."""
        current = self.constraints.resolve(publishers=[BASE_PUBLISHER])
        changes = diff_directives(current, self.base_constraints)
        if not changes:
            return None
        entry = self.constraints.publish(self.constraints.version + 1, changes, publisher=BASE_PUBLISHER)
        return entry.version

    def plan(self, previous: Optional[RunManifest], force: Iterable[str] = ()) -> Dict[str, str]:
        """
        Compute the dirty stages.

        Returns:
            dict: stage name -> reason, in topological order.
        """
        force = set(force)
        unknown = force - set(self.order)
        if unknown:
            raise KeyError(f"Cannot force unknown stage(s): {', '.join(sorted(unknown))}")

        dirty: Dict[str, str] = {}
        for name in self.order:
            reason = self._dirty_reason(name, previous.get(name) if previous else None, dirty, force)
            if reason:
                dirty[name] = reason
        return dirty

    def _dirty_reason(self, name: str, entry: Optional[StageRecord], dirty: Dict[str, str], force: Set[str]) -> Optional[str]:
        if name in force:
            return "forced"
        if entry is None or not entry.succeeded:
            return "never succeeded"
        upstream = sorted(self.graph.dependencies_of(name).intersection(dirty))
        if upstream:
            return f"upstream '{upstream[0]}' is dirty"

        stage = self.graph.stage(name)
        for kind in stage.inputs:
            producer = self.graph.producer_of(kind)
            if self.store.is_stale(producer, kind, entry.consumed.get(kind)):
                return f"input '{kind}' changed"
        for kind in stage.outputs:
            artifact = self.store.get(name, kind)
            if artifact is None or artifact.content_hash != entry.produced.get(kind):
                return f"output '{kind}' changed"
            if not self.store.has_object(artifact):
                return f"output '{kind}' missing from the store"
        if entry.constraints_hash != self._constraints_hash(name):
            return "constraints changed"
        if entry.tool_fingerprint != tool_fingerprint(stage, self.variables):
            return "tool definition changed"
        return None

    def run(self, previous: Optional[RunManifest] = None, force: Iterable[str] = ()) -> RunManifest:
        """
        Execute one flow run and return its manifest.

        Args:
            previous: Manifest to compare against; the latest run in the
                workspace is used when omitted.
            force: Stage names to re-run regardless of staleness.
        """
        if previous is None:
            previous = RunManifest.load_latest(self.runs_root)
        self._cancel.clear()
        self.refresh_sources()
        self.reconcile_base_constraints()
        dirty = self.plan(previous, force)

        manifest = RunManifest.create(self.runs_root, flow_name=self.flow_name)
        self.statuses = {}
        for name in self.order:
            if name in dirty:
                self.statuses[name] = StageStatus.PENDING
                manifest.update(name, status=StageStatus.PENDING, reason=dirty[name])
            else:
                self.statuses[name] = StageStatus.SUCCEEDED
                manifest.reuse(previous.get(name), previous.run_id)
        logger.info(
            "Run %s: %d of %d stage(s) dirty%s",
            manifest.run_id,
            len(dirty),
            len(self.order),
            (": " + ", ".join(f"{n} ({r})" for n, r in dirty.items())) if dirty else "",
        )

        self._execute(manifest, [name for name in self.order if name in dirty])

        if self._cancel.is_set() and StageStatus.CANCELLED in self.statuses.values():
            status = RunStatus.CANCELLED
        elif all(s == StageStatus.SUCCEEDED for s in self.statuses.values()):
            status = RunStatus.SUCCEEDED
        else:
            status = RunStatus.FAILED
        manifest.finish(status)
        logger.info("Run %s finished: %s %s", manifest.run_id, status.value, manifest.summary())
        return manifest

    def _license_classes(self, stage: StageDefinition) -> Tuple[str, ...]:
        if stage.tool.publishes_constraints:
            return (stage.tool.license_class, CONSTRAINT_PUBLISH_CLASS)
        return (stage.tool.license_class,)

    def _execute(self, manifest: RunManifest, pending: List[str]) -> None:
        licenses = dict(self.limits.licenses)
        licenses[CONSTRAINT_PUBLISH_CLASS] = 1
        pool = LicensePool(licenses)
        self._pending = list(pending)
        self._running = {}
        self._ready_since = {}
        self._not_before = {}
        self._retries = {}

        max_workers = max(1, self.limits.max_parallel)
        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="stage") as executor:
            while self._pending or self._running:
                try:
                    if self._cancel.is_set():
                        self._cancel_pending(manifest)
                    else:
                        self._admit(manifest, pool, executor, max_workers)
                    if self._running:
                        done, _ = wait(list(self._running), timeout=self.limits.poll_interval_sec,
                                       return_when=FIRST_COMPLETED)
                        for future in done:
                            self._complete(manifest, pool, future)
                    elif self._pending:
                        time.sleep(self.limits.poll_interval_sec)
                except KeyboardInterrupt:
                    self.cancel()

    def _admit(self, manifest: RunManifest, pool: LicensePool, executor: ThreadPoolExecutor, max_workers: int) -> None:
        now = time.monotonic()
        for name in list(self._pending):
            deps = self.graph.dependencies_of(name)
            if any(self.statuses[d] != StageStatus.SUCCEEDED for d in deps):
                continue
            if self.statuses[name] == StageStatus.PENDING:
                self.statuses[name] = StageStatus.READY
                self._ready_since[name] = now
                manifest.update(name, status=StageStatus.READY)
            if now < self._not_before.get(name, 0.0) or len(self._running) >= max_workers:
                continue

            stage = self.graph.stage(name)
            classes = self._license_classes(stage)
            try:
                pool.acquire(*classes)
            except ResourceUnavailable as exc:
                waited = now - self._ready_since[name]
                if waited >= self.limits.resource_wait_sec:
                    self._pending.remove(name)
                    self._fail(manifest, name, FailureType.RESOURCE_TIMEOUT, f"{exc} for {waited:.1f}s")
                continue

            self._pending.remove(name)
            self.statuses[name] = StageStatus.RUNNING
            future = executor.submit(self._invoke_stage, stage, manifest)
            self._running[future] = (name, classes)

    def _invoke_stage(self, stage: StageDefinition, manifest: RunManifest) -> InvocationResult:
        inputs = {}
        for kind in stage.inputs:
            artifact = self.store.get(self.graph.producer_of(kind), kind)
            if artifact is not None:
                inputs[kind] = artifact
        return self.invoker.invoke(
            stage,
            self.constraints.version,
            inputs,
            manifest=manifest,
            publishers=self._visible_publishers(stage.name),
        )

    def _complete(self, manifest: RunManifest, pool: LicensePool, future: Future) -> None:
        name, classes = self._running.pop(future)
        pool.release(*classes)
        try:
            result = future.result()
        except Exception as exc:
            logger.exception("Stage %s crashed inside the orchestrator", name)
            self._fail(manifest, name, FailureType.INTERNAL_ERROR, f"{type(exc).__name__}: {exc}")
            return

        if result.status == InvocationStatus.SUCCEEDED:
            self.statuses[name] = StageStatus.SUCCEEDED
        elif result.status == InvocationStatus.CANCELLED:
            self.statuses[name] = StageStatus.CANCELLED
        elif result.status == InvocationStatus.RESOURCE_UNAVAILABLE:
            self._requeue(manifest, name, result)
        else:
            self.statuses[name] = StageStatus.FAILED
            self._mark_descendants_stale(manifest, name)

    def _requeue(self, manifest: RunManifest, name: str, result: InvocationResult) -> None:
        now = time.monotonic()
        attempt = self._retries.get(name, 0) + 1
        self._retries[name] = attempt
        waited = now - self._ready_since.get(name, now)
        if waited >= self.limits.resource_wait_sec:
            self._fail(
                manifest,
                name,
                FailureType.RESOURCE_TIMEOUT,
                f"{result.error_summary} after {attempt} attempt(s) over {waited:.1f}s",
            )
            return
        delay = self.limits.backoff(attempt)
        logger.info("Stage %s: %s; retrying in %.1fs", name, result.error_summary, delay)
        self._not_before[name] = now + delay
        self.statuses[name] = StageStatus.READY
        self._pending.append(name)
        self._pending.sort(key=self.order.index)

    def _fail(self, manifest: RunManifest, name: str, failure_type: str, summary: str) -> None:
        logger.error("Stage %s failed (%s): %s", name, failure_type, summary)
        self.statuses[name] = StageStatus.FAILED
        manifest.update(name, status=StageStatus.FAILED, failure_type=failure_type, error_summary=summary)
        self._mark_descendants_stale(manifest, name)

    def _mark_descendants_stale(self, manifest: RunManifest, name: str) -> None:
        for child in sorted(self.graph.descendants_of(name), key=self.order.index):
            if self.statuses.get(child) in (StageStatus.PENDING, StageStatus.READY):
                self.statuses[child] = StageStatus.STALE
                if child in self._pending:
                    self._pending.remove(child)
                manifest.update(
                    child,
                    status=StageStatus.STALE,
                    failure_type=FailureType.UPSTREAM_FAILED,
                    error_summary=f"not run: upstream stage '{name}' failed",
                )

    def _cancel_pending(self, manifest: RunManifest) -> None:
        for name in self._pending:
            self.statuses[name] = StageStatus.CANCELLED
            manifest.update(
                name,
                status=StageStatus.CANCELLED,
                failure_type=FailureType.CANCELLED,
                error_summary="run cancelled before the stage started",
            )
        self._pending = []
