import json
import logging
import os
import re
import threading
from dataclasses import dataclass, asdict, field, fields
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from siliconstage.state.state import RunStatus, StageStatus

logger = logging.getLogger(__name__)

INDEX_FILENAME = "index.json"
LATEST_FILENAME = "LATEST"
MANIFEST_FILENAME = "manifest.json"
RUN_ID_RE = re.compile(r"run_\d{4}$")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _ensure_dir(path: str) -> str:
    os.makedirs(path, exist_ok=True)
    return path


def _write_json(path: str, data: Dict[str, Any]) -> None:
    tmp = f"{path}.tmp"
    with open(tmp, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)
    os.replace(tmp, path)


def _read_json(path: str) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def _next_run_id(runs_root: str) -> str:
    existing = [d for d in os.listdir(runs_root) if RUN_ID_RE.match(d)]
    if not existing:
        return "run_0001"
    max_id = max(int(x.split("_")[1]) for x in existing)
    return f"run_{max_id + 1:04d}"


def _load_index(runs_root: str) -> Dict[str, Any]:
    path = os.path.join(runs_root, INDEX_FILENAME)
    if not os.path.exists(path):
        return {"runs": []}
    try:
        data = _read_json(path)
    except (OSError, ValueError):
        logger.warning("Runs index %s is unreadable; starting a fresh one", path)
        return {"runs": []}
    data.setdefault("runs", [])
    return data


def _append_index(runs_root: str, run_id: str, status: str) -> None:
    index = _load_index(runs_root)
    index["runs"] = [x for x in index["runs"] if x.get("run_id") != run_id]
    index["runs"].append({"run_id": run_id, "status": status, "updated_at": _now_iso()})
    _write_json(os.path.join(runs_root, INDEX_FILENAME), index)
    with open(os.path.join(runs_root, LATEST_FILENAME), "w", encoding="utf-8") as f:
        f.write(run_id)


@dataclass
class StageRecord:
    stage: str
    status: str = StageStatus.PENDING.value
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    consumed: Dict[str, str] = field(default_factory=dict)
    produced: Dict[str, str] = field(default_factory=dict)
    constraint_version: Optional[int] = None
    constraints_hash: Optional[str] = None
    tool_fingerprint: Optional[str] = None
    exit_code: Optional[int] = None
    failure_type: Optional[str] = None
    error_summary: Optional[str] = None
    log: Optional[str] = None  # verbatim backend log, kept for failed stages
    log_path: Optional[str] = None
    attempts: int = 0
    duration_sec: Optional[float] = None
    reused_from: Optional[str] = None
    reason: Optional[str] = None  # why the stage was scheduled in this run

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StageRecord":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @property
    def succeeded(self) -> bool:
        return self.status == StageStatus.SUCCEEDED.value


class RunManifest:
    """
    Durable record of one flow execution. Every mutation is written straight
    to disk, so an interrupted run still leaves a usable partial manifest.
    """

    def __init__(self, run_id: str, run_dir: str, flow_name: str = "flow",
                 created_at: Optional[str] = None, status: str = RunStatus.RUNNING.value,
                 finished_at: Optional[str] = None, stages: Optional[Dict[str, StageRecord]] = None):
        self.run_id = run_id
        self.run_dir = run_dir
        self.flow_name = flow_name
        self.created_at = created_at or _now_iso()
        self.status = status
        self.finished_at = finished_at
        self._stages: Dict[str, StageRecord] = dict(stages or {})
        self._lock = threading.RLock()

    @property
    def path(self) -> str:
        return os.path.join(self.run_dir, MANIFEST_FILENAME)

    @property
    def runs_root(self) -> str:
        return os.path.dirname(self.run_dir)

    @classmethod
    def create(cls, runs_root: str, flow_name: str = "flow") -> "RunManifest":
        _ensure_dir(runs_root)
        run_id = _next_run_id(runs_root)
        manifest = cls(run_id=run_id, run_dir=_ensure_dir(os.path.join(runs_root, run_id)), flow_name=flow_name)
        manifest.save()
        _append_index(runs_root, run_id, manifest.status)
        return manifest

    @classmethod
    def load(cls, path: str) -> "RunManifest":
        data = _read_json(path)
        stages = {name: StageRecord.from_dict(item) for name, item in data.get("stages", {}).items()}
        return cls(
            run_id=data["run_id"],
            run_dir=os.path.dirname(os.path.abspath(path)),
            flow_name=data.get("flow_name", "flow"),
            created_at=data.get("created_at"),
            status=data.get("status", RunStatus.RUNNING.value),
            finished_at=data.get("finished_at"),
            stages=stages,
        )

    @classmethod
    def load_latest(cls, runs_root: str) -> Optional["RunManifest"]:
        latest = os.path.join(runs_root, LATEST_FILENAME)
        if not os.path.exists(latest):
            return None
        with open(latest, "r", encoding="utf-8") as f:
            run_id = f.read().strip()
        path = os.path.join(runs_root, run_id, MANIFEST_FILENAME)
        if not os.path.exists(path):
            return None
        return cls.load(path)

    @property
    def stages(self) -> Dict[str, StageRecord]:
        with self._lock:
            return dict(self._stages)

    def get(self, stage: str) -> Optional[StageRecord]:
        with self._lock:
            return self._stages.get(stage)

    def record(self, entry: StageRecord) -> None:
        with self._lock:
            self._stages[entry.stage] = entry
            self.save()

    def update(self, stage: str, **changes: Any) -> StageRecord:
        with self._lock:
            entry = self._stages.get(stage) or StageRecord(stage=stage)
            for name, value in changes.items():
                if isinstance(value, StageStatus):
                    value = value.value
                setattr(entry, name, value)
            self._stages[stage] = entry
            self.save()
            return entry

    def reuse(self, entry: StageRecord, from_run: str) -> StageRecord:
        """Carry a clean stage's previous entry into this run untouched."""
        copied = StageRecord.from_dict(entry.to_dict())
        copied.reused_from = entry.reused_from or from_run
        copied.reason = None
        self.record(copied)
        return copied

    def finish(self, status: RunStatus) -> None:
        with self._lock:
            self.status = status.value
            self.finished_at = _now_iso()
            self.save()
        _append_index(self.runs_root, self.run_id, self.status)

    @property
    def exit_code(self) -> int:
        return 0 if self.status == RunStatus.SUCCEEDED.value else 1

    def executed(self) -> List[str]:
        """Stages that actually ran in this run (not carried over)."""
        with self._lock:
            return [name for name, e in self._stages.items() if e.reused_from is None and e.attempts > 0]

    def summary(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        with self._lock:
            for entry in self._stages.values():
                counts[entry.status] = counts.get(entry.status, 0) + 1
        return counts

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "run_id": self.run_id,
                "flow_name": self.flow_name,
                "created_at": self.created_at,
                "finished_at": self.finished_at,
                "status": self.status,
                "stages": {name: e.to_dict() for name, e in self._stages.items()},
            }

    def save(self) -> None:
        with self._lock:
            _write_json(self.path, self.to_dict())
