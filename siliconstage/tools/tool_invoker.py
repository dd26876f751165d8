import hashlib
import json
import logging
import os
import shlex
import signal
import string
import subprocess
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Set

import yaml

from siliconstage.config import get_state_dir
from siliconstage.errors import InvalidDescriptor, StageFailure, VersionConflict
from siliconstage.state.state import Artifact, FailureType, InvocationStatus, StageDefinition, StageStatus
from siliconstage.tools.artifact_store import ArtifactStore
from siliconstage.tools.constraint_set import ConstraintSet, fingerprint, to_sdc
from siliconstage.tools.run_docker import build_docker_command, to_container_path
from siliconstage.tools.run_manifest import RunManifest

logger = logging.getLogger(__name__)

WORK_DIRNAME = "work"
CONSTRAINTS_FILENAME = "constraints.yaml"
SDC_FILENAME = "constraints.sdc"
CONSTRAINTS_OUT_FILENAME = "constraints_out.yaml"

BUILTIN_PLACEHOLDERS = {"stage", "work_dir", "workspace", "constraints", "sdc", "constraint_version"}
PATH_PLACEHOLDERS = {"work_dir", "workspace", "constraints", "sdc", "constraints_out"}

PROCESS_POLL_SEC = 0.2
TERMINATE_GRACE_SEC = 10
LOG_SUMMARY_CHARS = 400


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def command_placeholders(template: str) -> Set[str]:
    names = set()
    for _, field_name, _, _ in string.Formatter().parse(template):
        if field_name is None:
            continue
        names.add(field_name.split(".")[0].split("[")[0])
    return names


def validate_command_template(definition: StageDefinition, variables: Optional[Dict[str, str]] = None) -> None:
    """Reject placeholders the invoker would not be able to fill."""
    variables = variables or {}
    clashes = BUILTIN_PLACEHOLDERS.intersection(variables) | {
        v for v in variables if v.startswith(("in_", "out_")) or v == "constraints_out"
    }
    if clashes:
        raise InvalidDescriptor(f"Flow variables shadow built-in placeholders: {', '.join(sorted(clashes))}")

    allowed = set(BUILTIN_PLACEHOLDERS) | set(variables)
    allowed |= {f"in_{k}" for k in definition.inputs}
    allowed |= {f"out_{k}" for k in definition.outputs}
    if definition.tool.publishes_constraints:
        allowed.add("constraints_out")
    try:
        used = command_placeholders(definition.tool.command)
    except ValueError as exc:
        raise InvalidDescriptor(f"Stage '{definition.name}': malformed command template: {exc}") from exc
    unknown = used - allowed
    if "" in unknown:
        raise InvalidDescriptor(f"Stage '{definition.name}': positional '{{}}' placeholders are not supported")
    if unknown:
        raise InvalidDescriptor(
            f"Stage '{definition.name}': unknown placeholder(s) {', '.join(sorted(unknown))} in command template"
        )


def tool_fingerprint(definition: StageDefinition, variables: Optional[Dict[str, str]] = None) -> str:
    used = command_placeholders(definition.tool.command)
    payload = {
        "definition": definition.model_dump(mode="json"),
        "variables": {k: v for k, v in sorted((variables or {}).items()) if k in used},
    }
    return hashlib.sha256(json.dumps(payload, sort_keys=True).encode("utf-8")).hexdigest()


def _format(stage: StageDefinition, mapping: Dict[str, str]) -> str:
    try:
        return stage.tool.command.format_map(mapping)
    except (KeyError, IndexError, ValueError) as exc:
        raise StageFailure(stage.name, FailureType.LAUNCH_ERROR, f"cannot render command template: {exc!r}") from exc


def _quoted(mapping: Dict[str, str], path_keys: Set[str]) -> Dict[str, str]:
    """Shell-quote path placeholders; plain variables are substituted verbatim."""
    return {k: shlex.quote(v) if k in path_keys else v for k, v in mapping.items()}


def _terminate(proc: subprocess.Popen, force: bool = False) -> None:
    sig = signal.SIGKILL if force and hasattr(signal, "SIGKILL") else signal.SIGTERM
    try:
        if os.name == "posix":
            os.killpg(os.getpgid(proc.pid), sig)
        elif force:
            proc.kill()
        else:
            proc.terminate()
    except (ProcessLookupError, PermissionError):
        pass


def _run_process(command, cwd: str, timeout_sec: float,
                 cancel_event: Optional[threading.Event] = None) -> Dict[str, Any]:
    """
    Runs one backend command and waits for it, polling so that a timeout or a
    cancellation can terminate it.

    Args:
        command (str or list): Shell command string, or argv list (Docker).
        cwd (str): Working directory.
        timeout_sec (float): Hard limit on wall-clock time.
        cancel_event: Set by the scheduler to abort the run.

    Returns:
        dict: {"returncode", "stdout", "stderr", "timed_out", "cancelled", "launch_error", "command"}
    """
    shown = command if isinstance(command, str) else " ".join(command)
    result = {
        "returncode": None,
        "stdout": "",
        "stderr": "",
        "timed_out": False,
        "cancelled": False,
        "launch_error": False,
        "command": shown,
    }
    try:
        proc = subprocess.Popen(
            command,
            cwd=cwd,
            shell=isinstance(command, str),
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            errors="replace",
            start_new_session=(os.name == "posix"),
        )
    except OSError as exc:
        result["stderr"] = f"Launch error: {exc}"
        result["launch_error"] = True
        return result

    start = time.monotonic()
    try:
        while True:
            remaining = timeout_sec - (time.monotonic() - start)
            if remaining <= 0:
                result["timed_out"] = True
                break
            if cancel_event is not None and cancel_event.is_set():
                result["cancelled"] = True
                break
            try:
                stdout, stderr = proc.communicate(timeout=min(PROCESS_POLL_SEC, remaining))
            except subprocess.TimeoutExpired:
                continue
            result.update(returncode=proc.returncode, stdout=stdout, stderr=stderr)
            return result

        _terminate(proc)
        try:
            stdout, stderr = proc.communicate(timeout=TERMINATE_GRACE_SEC)
        except subprocess.TimeoutExpired:
            _terminate(proc, force=True)
            stdout, stderr = proc.communicate()
        result.update(returncode=proc.returncode, stdout=stdout or "", stderr=stderr or "")
        return result
    finally:
        if proc.poll() is None:
            _terminate(proc, force=True)
            proc.wait()


@dataclass
class InvocationResult:
    stage: str
    status: InvocationStatus
    exit_code: Optional[int] = None
    produced: Dict[str, Artifact] = field(default_factory=dict)
    log: str = ""
    duration_sec: float = 0.0
    failure_type: Optional[str] = None
    error_summary: Optional[str] = None
    consumed: Dict[str, str] = field(default_factory=dict)
    constraint_version: int = 0
    constraints_hash: Optional[str] = None
    published_version: Optional[int] = None

    @property
    def succeeded(self) -> bool:
        return self.status == InvocationStatus.SUCCEEDED


class ToolInvoker:
    """Launches the backend of one stage and normalises its outcome."""

    def __init__(self, workspace: str, store: ArtifactStore, constraints: ConstraintSet,
                 variables: Optional[Dict[str, str]] = None, cancel_event: Optional[threading.Event] = None):
        self.workspace = os.path.abspath(workspace)
        self.store = store
        self.constraints = constraints
        self.variables = dict(variables or {})
        self.cancel_event = cancel_event or threading.Event()
        self.work_root = os.path.join(get_state_dir(self.workspace), WORK_DIRNAME)

    def work_dir(self, stage_name: str) -> str:
        return os.path.join(self.work_root, stage_name)

    def _prepare_work_dir(self, stage: StageDefinition, view: Dict[str, Any]) -> str:
        work_dir = self.work_dir(stage.name)
        os.makedirs(work_dir, exist_ok=True)
        # Stale outputs from an earlier attempt must not satisfy the output check.
        stale = [os.path.join(work_dir, rel) for rel in stage.outputs.values()]
        stale.append(os.path.join(work_dir, CONSTRAINTS_OUT_FILENAME))
        for path in stale:
            if os.path.isfile(path):
                os.remove(path)
        for rel in stage.outputs.values():
            os.makedirs(os.path.dirname(os.path.join(work_dir, rel)), exist_ok=True)

        with open(os.path.join(work_dir, CONSTRAINTS_FILENAME), "w", encoding="utf-8") as f:
            yaml.safe_dump(view, f, sort_keys=True)
        with open(os.path.join(work_dir, SDC_FILENAME), "w", encoding="utf-8") as f:
            f.write(to_sdc(view))
        return work_dir

    def _render_command(self, stage: StageDefinition, work_dir: str, constraint_version: int,
                        input_artifacts: Dict[str, Artifact]):
        mapping: Dict[str, str] = dict(self.variables)
        mapping.update({
            "stage": stage.name,
            "work_dir": work_dir,
            "workspace": self.workspace,
            "constraints": os.path.join(work_dir, CONSTRAINTS_FILENAME),
            "sdc": os.path.join(work_dir, SDC_FILENAME),
            "constraint_version": str(constraint_version),
        })
        if stage.tool.publishes_constraints:
            mapping["constraints_out"] = os.path.join(work_dir, CONSTRAINTS_OUT_FILENAME)
        path_keys = set(PATH_PLACEHOLDERS)
        for kind in stage.inputs:
            mapping[f"in_{kind}"] = input_artifacts[kind].path
            path_keys.add(f"in_{kind}")
        for kind, rel in stage.outputs.items():
            mapping[f"out_{kind}"] = os.path.join(work_dir, rel)
            path_keys.add(f"out_{kind}")

        if not stage.tool.image:
            return _format(stage, _quoted(mapping, path_keys))

        try:
            for key in path_keys & set(mapping):
                mapping[key] = to_container_path(mapping[key], self.workspace)
            container_cwd = to_container_path(work_dir, self.workspace)
        except ValueError as exc:
            raise StageFailure(stage.name, FailureType.LAUNCH_ERROR, str(exc)) from exc
        return build_docker_command(
            _format(stage, _quoted(mapping, path_keys)),
            image=stage.tool.image,
            workspace_path=self.workspace,
            cwd=container_cwd,
        )

    def _warn_extra_outputs(self, stage: StageDefinition, work_dir: str) -> None:
        declared = {os.path.normpath(rel) for rel in stage.outputs.values()}
        declared |= {CONSTRAINTS_FILENAME, SDC_FILENAME, CONSTRAINTS_OUT_FILENAME, f"{stage.name}.log"}
        extra: List[str] = []
        for root, _, files in os.walk(work_dir):
            for name in files:
                rel = os.path.normpath(os.path.relpath(os.path.join(root, name), work_dir))
                if rel not in declared:
                    extra.append(rel)
        if extra:
            shown = ", ".join(sorted(extra)[:5]) + (" ..." if len(extra) > 5 else "")
            logger.warning("Stage %s left %d undeclared file(s), ignored: %s", stage.name, len(extra), shown)

    def _read_refined_constraints(self, stage: StageDefinition, work_dir: str) -> Dict[str, Any]:
        path = os.path.join(work_dir, CONSTRAINTS_OUT_FILENAME)
        if not os.path.exists(path):
            return {}
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise StageFailure(stage.name, FailureType.BACKEND_ERROR, f"unreadable {CONSTRAINTS_OUT_FILENAME}: {exc}")
        if not isinstance(data, dict):
            raise StageFailure(stage.name, FailureType.BACKEND_ERROR, f"{CONSTRAINTS_OUT_FILENAME} must be a mapping")
        return data

    def invoke(self, stage: StageDefinition, constraint_version: int, input_artifacts: Dict[str, Artifact],
               manifest: Optional[RunManifest] = None, publishers: Optional[Iterable[str]] = None) -> InvocationResult:
        """
        Execute one stage's backend.

        Args:
            stage: Definition of the stage to run.
            constraint_version: Ledger version the stage reads.
            input_artifacts: Current artifact for every declared input kind.
            manifest: When given, the stage's entry is written before and after.
            publishers: Restricts the constraint view to these publishers.

        Returns:
            InvocationResult
        """
        start = time.monotonic()
        view = self.constraints.resolve(constraint_version, publishers=publishers)
        result = InvocationResult(
            stage=stage.name,
            status=InvocationStatus.FAILED,
            consumed={kind: a.content_hash for kind, a in input_artifacts.items()},
            constraint_version=constraint_version,
            constraints_hash=fingerprint(view),
        )
        log_path = os.path.join(self.work_dir(stage.name), f"{stage.name}.log")
        if manifest is not None:
            previous = manifest.get(stage.name)
            manifest.update(
                stage.name,
                status=StageStatus.RUNNING,
                started_at=_now_iso(),
                finished_at=None,
                consumed=result.consumed,
                produced={},
                constraint_version=constraint_version,
                constraints_hash=result.constraints_hash,
                tool_fingerprint=tool_fingerprint(stage, self.variables),
                exit_code=None,
                failure_type=None,
                error_summary=None,
                log=None,
                log_path=log_path,
                attempts=(previous.attempts if previous else 0) + 1,
                reused_from=None,
            )

        try:
            missing = [k for k in stage.inputs if k not in input_artifacts]
            if missing:
                raise StageFailure(stage.name, FailureType.INTERNAL_ERROR, f"missing input artifact(s): {', '.join(missing)}")
            work_dir = self._prepare_work_dir(stage, view)
            command = self._render_command(stage, work_dir, constraint_version, input_artifacts)
            logger.info("Launching %s: %s", stage.name, command if isinstance(command, str) else " ".join(command))
            proc = _run_process(command, cwd=work_dir, timeout_sec=stage.tool.timeout_sec, cancel_event=self.cancel_event)
            result.exit_code = proc["returncode"]
            result.log = self._format_log(proc)
            with open(log_path, "w", encoding="utf-8") as f:
                f.write(result.log)
            self._classify(stage, work_dir, proc, result)
        except StageFailure as exc:
            result.status = InvocationStatus.FAILED
            result.failure_type = exc.failure_type
            result.error_summary = exc.summary
            if exc.exit_code is not None:
                result.exit_code = exc.exit_code

        result.duration_sec = round(time.monotonic() - start, 3)
        if result.succeeded:
            logger.info("Stage %s succeeded in %.2fs", stage.name, result.duration_sec)
        else:
            logger.warning("Stage %s %s: %s", stage.name, result.status.value, result.error_summary)
        if manifest is not None:
            self._write_manifest(manifest, stage, result)
        return result

    def _classify(self, stage: StageDefinition, work_dir: str, proc: Dict[str, Any], result: InvocationResult) -> None:
        if proc["launch_error"]:
            raise StageFailure(stage.name, FailureType.LAUNCH_ERROR, proc["stderr"])
        if proc["cancelled"]:
            result.status = InvocationStatus.CANCELLED
            result.failure_type = FailureType.CANCELLED
            result.error_summary = "backend terminated: run cancelled"
            return
        if proc["timed_out"]:
            raise StageFailure(stage.name, FailureType.TIMEOUT, f"backend exceeded {stage.tool.timeout_sec}s and was terminated")
        if proc["returncode"] in stage.tool.retry_exit_codes:
            result.status = InvocationStatus.RESOURCE_UNAVAILABLE
            result.error_summary = f"license unavailable (exit {proc['returncode']})"
            return
        if proc["returncode"] != 0:
            raise StageFailure(
                stage.name,
                FailureType.BACKEND_ERROR,
                f"exit {proc['returncode']}: {self._tail(proc)}",
                exit_code=proc["returncode"],
            )

        missing = [kind for kind, rel in stage.outputs.items() if not os.path.isfile(os.path.join(work_dir, rel))]
        if missing:
            raise StageFailure(stage.name, FailureType.MISSING_OUTPUT, f"declared output(s) not produced: {', '.join(missing)}")
        self._warn_extra_outputs(stage, work_dir)

        if stage.tool.publishes_constraints:
            refined = self._read_refined_constraints(stage, work_dir)
            if refined:
                try:
                    result.published_version = self.constraints.publish_next(
                        refined, publisher=stage.name, based_on=result.constraint_version
                    )
                except VersionConflict as exc:
                    raise StageFailure(stage.name, FailureType.CONSTRAINT_CONFLICT, str(exc)) from exc

        # Recorded only now, so dependents never see a half-finished stage.
        for kind, rel in stage.outputs.items():
            result.produced[kind] = self.store.ingest(stage.name, kind, os.path.join(work_dir, rel))
        result.status = InvocationStatus.SUCCEEDED

    @staticmethod
    def _format_log(proc: Dict[str, Any]) -> str:
        parts = [f"$ {proc['command']}\n"]
        if proc["stdout"]:
            parts.append(proc["stdout"])
        if proc["stderr"]:
            parts.append("\n--- stderr ---\n" + proc["stderr"])
        return "".join(parts)

    @staticmethod
    def _tail(proc: Dict[str, Any]) -> str:
        text = (proc["stderr"] or proc["stdout"] or "").strip()
        return text[-LOG_SUMMARY_CHARS:] if text else "no output"

    def _write_manifest(self, manifest: RunManifest, stage: StageDefinition, result: InvocationResult) -> None:
        if result.succeeded:
            status = StageStatus.SUCCEEDED
        elif result.status == InvocationStatus.RESOURCE_UNAVAILABLE:
            status = StageStatus.READY
        elif result.status == InvocationStatus.CANCELLED:
            status = StageStatus.CANCELLED
        else:
            status = StageStatus.FAILED
        manifest.update(
            stage.name,
            status=status,
            finished_at=_now_iso(),
            produced={kind: a.content_hash for kind, a in result.produced.items()},
            exit_code=result.exit_code,
            failure_type=result.failure_type,
            error_summary=result.error_summary,
            log=None if result.succeeded else result.log,
            duration_sec=result.duration_sec,
        )
