import hashlib
import json
import logging
import os
import shutil
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from siliconstage.errors import ArtifactNotFound
from siliconstage.state.state import Artifact

logger = logging.getLogger(__name__)

INDEX_FILENAME = "index.json"
OBJECTS_DIRNAME = "objects"
HASH_CHUNK_BYTES = 1 << 20


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _ensure_dir(path: str) -> str:
    os.makedirs(path, exist_ok=True)
    return path


def _write_json_atomic(path: str, data: Dict[str, Any]) -> None:
    tmp = f"{path}.tmp"
    with open(tmp, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)
    os.replace(tmp, path)


def hash_file(path: str) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(HASH_CHUNK_BYTES), b""):
            digest.update(chunk)
    return digest.hexdigest()


def _key(stage: str, kind: str) -> str:
    return f"{stage}:{kind}"


class ArtifactStore:
    """
    Content-addressed record of every file produced by a stage.

    The index maps (stage, kind) to the current Artifact plus the history of
    records it replaced. File content lives under objects/<hh>/<hash>/ so a
    recorded artifact never changes underneath its consumers.
    """

    def __init__(self, root: str):
        self.root = _ensure_dir(os.path.abspath(root))
        self.objects_dir = _ensure_dir(os.path.join(self.root, OBJECTS_DIRNAME))
        self.index_path = os.path.join(self.root, INDEX_FILENAME)
        self._lock = threading.Lock()
        self._entries: Dict[str, Dict[str, Any]] = self._load_index()

    def _load_index(self) -> Dict[str, Dict[str, Any]]:
        if not os.path.exists(self.index_path):
            return {}
        with open(self.index_path, "r", encoding="utf-8") as f:
            data = json.load(f)
        entries = {}
        for key, item in data.get("artifacts", {}).items():
            entries[key] = {
                "current": Artifact.from_dict(item["current"]),
                "history": [Artifact.from_dict(x) for x in item.get("history", [])],
            }
        return entries

    def _save_index(self) -> None:
        data = {
            "updated_at": _now_iso(),
            "artifacts": {
                key: {
                    "current": item["current"].to_dict(),
                    "history": [a.to_dict() for a in item["history"]],
                }
                for key, item in sorted(self._entries.items())
            },
        }
        _write_json_atomic(self.index_path, data)

    def record(
        self,
        stage: str,
        kind: str,
        content_hash: str,
        location: str,
        object_path: Optional[str] = None,
    ) -> Artifact:
        with self._lock:
            key = _key(stage, kind)
            entry = self._entries.get(key)
            if entry and entry["current"].content_hash == content_hash:
                return entry["current"]

            artifact = Artifact(
                stage=stage,
                kind=kind,
                content_hash=content_hash,
                location=location,
                object_path=object_path,
                recorded_at=_now_iso(),
            )
            if entry:
                entry["history"].append(entry["current"])
                entry["current"] = artifact
                logger.info("Artifact %s/%s changed -> %s", stage, kind, content_hash[:12])
            else:
                self._entries[key] = {"current": artifact, "history": []}
                logger.debug("Artifact %s/%s recorded -> %s", stage, kind, content_hash[:12])
            self._save_index()
            return artifact

    def ingest(self, stage: str, kind: str, path: str) -> Artifact:
        """Hash `path`, copy it into the object store and record it."""
        content_hash = hash_file(path)
        obj_dir = os.path.join(self.objects_dir, content_hash[:2], content_hash)
        obj_path = os.path.join(obj_dir, os.path.basename(path))
        if not os.path.exists(obj_path):
            _ensure_dir(obj_dir)
            tmp = f"{obj_path}.part"
            shutil.copy2(path, tmp)
            os.replace(tmp, obj_path)
        return self.record(stage, kind, content_hash, os.path.abspath(path), object_path=obj_path)

    def get(self, stage: str, kind: str) -> Optional[Artifact]:
        with self._lock:
            entry = self._entries.get(_key(stage, kind))
            return entry["current"] if entry else None

    def current_hash(self, stage: str, kind: str) -> str:
        artifact = self.get(stage, kind)
        if artifact is None:
            raise ArtifactNotFound(stage, kind)
        return artifact.content_hash

    def is_stale(self, stage: str, kind: str, since_hash: Optional[str]) -> bool:
        artifact = self.get(stage, kind)
        return artifact is None or artifact.content_hash != since_hash

    def history(self, stage: str, kind: str) -> List[Artifact]:
        """Older records first, current last."""
        with self._lock:
            entry = self._entries.get(_key(stage, kind))
            if not entry:
                return []
            return list(entry["history"]) + [entry["current"]]

    def has_object(self, artifact: Artifact) -> bool:
        return os.path.exists(artifact.path)
