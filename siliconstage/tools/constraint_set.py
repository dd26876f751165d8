"""
Constraint Set - append-only, versioned ledger of design constraint directives.

Each version carries the directives one publisher added or overrode. Readers
resolve a flattened view at a given version; nothing is ever edited in place,
so the ledger doubles as the history of why timing changed between runs.
"""

import copy
import hashlib
import json
import logging
import os
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

import yaml

from siliconstage.errors import VersionConflict
from siliconstage.state.state import BASE_PUBLISHER

logger = logging.getLogger(__name__)


@dataclass
class ConstraintVersion:
    version: int
    publisher: str
    directives: Dict[str, Any]
    published_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "publisher": self.publisher,
            "published_at": self.published_at,
            "directives": self.directives,
        }


class ConstraintSet:
    def __init__(self, path: Optional[str] = None):
        self.path = path
        self._versions: List[ConstraintVersion] = []
        self._lock = threading.RLock()
        if path and os.path.exists(path):
            self._load()

    def _load(self) -> None:
        with open(self.path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        for item in data.get("versions", []):
            self._versions.append(
                ConstraintVersion(
                    version=int(item["version"]),
                    publisher=item.get("publisher", BASE_PUBLISHER),
                    directives=item.get("directives") or {},
                    published_at=item.get("published_at", ""),
                )
            )

    def _save(self) -> None:
        if not self.path:
            return
        os.makedirs(os.path.dirname(os.path.abspath(self.path)), exist_ok=True)
        tmp = f"{self.path}.tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            yaml.safe_dump({"versions": [v.to_dict() for v in self._versions]}, f, sort_keys=False)
        os.replace(tmp, self.path)

    @property
    def version(self) -> int:
        """Latest published version; 0 when the ledger is empty."""
        with self._lock:
            return self._versions[-1].version if self._versions else 0

    def history(self) -> List[ConstraintVersion]:
        with self._lock:
            return list(self._versions)

    def publish(self, version: int, directives: Dict[str, Any], publisher: str = BASE_PUBLISHER) -> ConstraintVersion:
        with self._lock:
            expected = self.version + 1
            if version != expected:
                raise VersionConflict(expected=expected, got=version)
            entry = ConstraintVersion(version=version, publisher=publisher, directives=copy.deepcopy(dict(directives)))
            self._versions.append(entry)
            self._save()
            logger.info("Constraint version %d published by %s (%d directives)", version, publisher, len(directives))
            return entry

    def publish_next(self, directives: Dict[str, Any], publisher: str, based_on: Optional[int] = None) -> int:
        """
        Publish `directives` as the next version unless `publisher` itself
        already set every one of them to the same value.

        Args:
            directives: Added or overridden directives; None removes one.
            publisher: Stage name (or @base) recorded with the version.
            based_on: Version the publisher read. If the ledger moved on since,
                the write would be a lost update and VersionConflict is raised.

        Returns:
            int: the version that reflects the directives.
        """
        with self._lock:
            if based_on is not None and based_on != self.version:
                raise VersionConflict(expected=self.version + 1, got=based_on + 1)
            # Readers filter by publisher, so only its own history counts.
            own = self._latest_by(publisher)
            if all(k in own and own[k] == v for k, v in directives.items()):
                return self.version
            return self.publish(self.version + 1, directives, publisher=publisher).version

    def _latest_by(self, publisher: str) -> Dict[str, Any]:
        """Last value (None for a removal) each directive got from `publisher`."""
        latest: Dict[str, Any] = {}
        for entry in self._versions:
            if entry.publisher == publisher:
                latest.update(entry.directives)
        return latest

    def resolve(self, version: Optional[int] = None, publishers: Optional[Iterable[str]] = None) -> Dict[str, Any]:
        """
        Flattened directive set visible at `version` (latest if None).

        Args:
            version: Last version to include.
            publishers: When given, only versions published by these names count.
        """
        allowed = set(publishers) if publishers is not None else None
        with self._lock:
            limit = self.version if version is None else version
            if limit < 0 or limit > self.version:
                raise KeyError(f"Constraint version {limit} does not exist (latest is {self.version})")
            view: Dict[str, Any] = {}
            for entry in self._versions:
                if entry.version > limit:
                    break
                if allowed is not None and entry.publisher not in allowed:
                    continue
                for name, value in entry.directives.items():
                    if value is None:
                        view.pop(name, None)
                    else:
                        view[name] = copy.deepcopy(value)
            return view


def diff_directives(current: Dict[str, Any], desired: Dict[str, Any]) -> Dict[str, Any]:
    """Directives to publish so that `current` becomes `desired`; removals map to None."""
    changes = {k: v for k, v in desired.items() if current.get(k) != v}
    for name in current:
        if name not in desired:
            changes[name] = None
    return changes


def fingerprint(view: Dict[str, Any]) -> str:
    payload = json.dumps(view, sort_keys=True, default=str)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def _ports(value: Any) -> str:
    if isinstance(value, (list, tuple)):
        return "{" + " ".join(str(v) for v in value) + "}"
    return str(value)


def to_sdc(view: Dict[str, Any]) -> str:
    """Render the timing directives of a view as SDC. Non-timing directives are skipped."""
    lines = []
    for name in sorted(view):
        value = view[name]
        group, _, label = name.partition(".")
        if not isinstance(value, dict):
            continue
        if group == "clock":
            period = value.get("period_ns", value.get("period"))
            port = value.get("port", "clk")
            lines.append(f"create_clock -name {label or port} -period {period} [get_ports {_ports(port)}]")
        elif group == "false_path":
            lines.append(f"set_false_path -from {value['from']} -to {value['to']}")
        elif group == "multicycle":
            kind = "-hold" if value.get("hold") else "-setup"
            lines.append(f"set_multicycle_path {value.get('cycles', 2)} {kind} -from {value['from']} -to {value['to']}")
        elif group in ("input_delay", "output_delay"):
            cmd = "set_input_delay" if group == "input_delay" else "set_output_delay"
            lines.append(
                f"{cmd} {value.get('delay_ns', 0)} -clock {value['clock']} [get_ports {_ports(value.get('ports', label))}]"
            )
    return "\n".join(lines) + ("\n" if lines else "")
