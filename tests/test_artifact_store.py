import json
import os
import tempfile

import pytest

from siliconstage.errors import ArtifactNotFound
from siliconstage.tools.artifact_store import ArtifactStore, hash_file


def _write_file(path: str, content: str) -> str:
    with open(path, "w", encoding="utf-8") as f:
        f.write(content)
    return path


def test_record_and_lookup():
    with tempfile.TemporaryDirectory() as root:
        store = ArtifactStore(root)
        art = store.record("synthesis", "netlist", "a" * 64, "/tmp/netlist.v")

        assert store.current_hash("synthesis", "netlist") == "a" * 64
        assert store.get("synthesis", "netlist") == art
        assert store.get("synthesis", "sdc") is None
        with pytest.raises(ArtifactNotFound):
            store.current_hash("floorplan", "floorplan_db")


def test_same_hash_is_a_noop_and_new_hash_keeps_history():
    with tempfile.TemporaryDirectory() as root:
        store = ArtifactStore(root)
        first = store.record("synthesis", "netlist", "a" * 64, "/tmp/a.v")
        again = store.record("synthesis", "netlist", "a" * 64, "/tmp/elsewhere.v")
        assert again == first
        assert len(store.history("synthesis", "netlist")) == 1

        store.record("synthesis", "netlist", "b" * 64, "/tmp/b.v")
        history = store.history("synthesis", "netlist")
        assert [a.content_hash for a in history] == ["a" * 64, "b" * 64]
        assert store.current_hash("synthesis", "netlist") == "b" * 64


def test_is_stale():
    with tempfile.TemporaryDirectory() as root:
        store = ArtifactStore(root)
        assert store.is_stale("synthesis", "netlist", None)
        store.record("synthesis", "netlist", "a" * 64, "/tmp/a.v")
        assert not store.is_stale("synthesis", "netlist", "a" * 64)
        assert store.is_stale("synthesis", "netlist", "0" * 64)


def test_index_survives_reopen():
    with tempfile.TemporaryDirectory() as root:
        ArtifactStore(root).record("synthesis", "netlist", "a" * 64, "/tmp/a.v")
        reopened = ArtifactStore(root)
        assert reopened.current_hash("synthesis", "netlist") == "a" * 64

        with open(os.path.join(root, "index.json"), "r", encoding="utf-8") as f:
            data = json.load(f)
        assert "synthesis:netlist" in data["artifacts"]


def test_ingest_copies_into_object_store():
    with tempfile.TemporaryDirectory() as tmp:
        store = ArtifactStore(os.path.join(tmp, "artifacts"))
        src = _write_file(os.path.join(tmp, "netlist.v"), "module counter; endmodule\n")

        art = store.ingest("synthesis", "netlist", src)
        assert art.content_hash == hash_file(src)
        assert art.location == os.path.abspath(src)
        assert art.object_path.startswith(store.objects_dir)
        assert store.has_object(art)

        # Overwriting the work file must not affect what consumers read.
        _write_file(src, "module counter_v2; endmodule\n")
        with open(art.path, "r", encoding="utf-8") as f:
            assert "counter_v2" not in f.read()

        newer = store.ingest("synthesis", "netlist", src)
        assert newer.content_hash != art.content_hash
        assert store.has_object(art)
        assert not store.has_object(store.record("x", "y", "c" * 64, os.path.join(tmp, "missing")))
