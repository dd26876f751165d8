import logging
import os
import tempfile

import pytest

from siliconstage.errors import InvalidDescriptor
from siliconstage.state.state import BackendDescriptor, FailureType, InvocationStatus, StageDefinition
from siliconstage.tools import tool_invoker as ti
from siliconstage.tools.artifact_store import ArtifactStore
from siliconstage.tools.constraint_set import ConstraintSet
from siliconstage.tools.run_manifest import RunManifest

CLOCK = {"clock.core": {"period_ns": 10.0, "port": "clk"}}


def _write_file(path: str, content: str) -> str:
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        f.write(content)
    return path


def _stage(command: str, name: str = "synthesis", inputs=("rtl",), outputs=None, **tool) -> StageDefinition:
    tool.setdefault("timeout_sec", 30)
    return StageDefinition(
        name=name,
        inputs=list(inputs),
        outputs=outputs if outputs is not None else {"netlist": "netlist.v"},
        tool=BackendDescriptor(command=command, **tool),
    )


def _setup(workspace: str):
    store = ArtifactStore(os.path.join(workspace, ".flow", "artifacts"))
    constraints = ConstraintSet()
    constraints.publish(1, CLOCK)
    rtl = _write_file(os.path.join(workspace, "rtl", "counter.v"), "module counter; endmodule\n")
    rtl_art = store.ingest("@source", "rtl", rtl)
    return ti.ToolInvoker(workspace, store, constraints), store, constraints, rtl_art


def test_successful_stage_records_outputs():
    with tempfile.TemporaryDirectory() as workspace:
        invoker, store, _, rtl = _setup(workspace)
        result = invoker.invoke(_stage("cat {in_rtl} > {out_netlist}"), 1, {"rtl": rtl})

        assert result.status == InvocationStatus.SUCCEEDED
        assert result.exit_code == 0
        assert result.consumed == {"rtl": rtl.content_hash}
        assert result.produced["netlist"].content_hash == rtl.content_hash
        assert store.current_hash("synthesis", "netlist") == rtl.content_hash

        work_dir = invoker.work_dir("synthesis")
        with open(os.path.join(work_dir, "constraints.sdc"), "r", encoding="utf-8") as f:
            assert "create_clock -name core -period 10.0" in f.read()
        assert os.path.exists(os.path.join(work_dir, "synthesis.log"))


def test_nonzero_exit_is_backend_error_and_records_nothing():
    with tempfile.TemporaryDirectory() as workspace:
        invoker, store, _, rtl = _setup(workspace)
        result = invoker.invoke(_stage("echo 'syntax error near line 3' >&2; exit 3"), 1, {"rtl": rtl})

        assert result.status == InvocationStatus.FAILED
        assert result.failure_type == FailureType.BACKEND_ERROR
        assert result.exit_code == 3
        assert "syntax error near line 3" in result.error_summary
        assert "syntax error near line 3" in result.log
        assert store.get("synthesis", "netlist") is None


def test_missing_output_fails_even_with_exit_zero():
    with tempfile.TemporaryDirectory() as workspace:
        invoker, store, _, rtl = _setup(workspace)
        result = invoker.invoke(_stage("true"), 1, {"rtl": rtl})

        assert result.status == InvocationStatus.FAILED
        assert result.failure_type == FailureType.MISSING_OUTPUT
        assert "netlist" in result.error_summary
        assert store.get("synthesis", "netlist") is None


def test_output_left_by_earlier_attempt_does_not_count():
    with tempfile.TemporaryDirectory() as workspace:
        invoker, _, _, rtl = _setup(workspace)
        assert invoker.invoke(_stage("cat {in_rtl} > {out_netlist}"), 1, {"rtl": rtl}).succeeded

        result = invoker.invoke(_stage("true"), 1, {"rtl": rtl})
        assert result.failure_type == FailureType.MISSING_OUTPUT


def test_timeout_terminates_backend():
    with tempfile.TemporaryDirectory() as workspace:
        invoker, _, _, rtl = _setup(workspace)
        result = invoker.invoke(_stage("sleep 20", timeout_sec=0.3), 1, {"rtl": rtl})

        assert result.status == InvocationStatus.FAILED
        assert result.failure_type == FailureType.TIMEOUT
        assert result.duration_sec < 15


def test_license_exit_code_is_resource_unavailable():
    with tempfile.TemporaryDirectory() as workspace:
        invoker, store, _, rtl = _setup(workspace)
        result = invoker.invoke(_stage("echo 'no license' >&2; exit 75"), 1, {"rtl": rtl})

        assert result.status == InvocationStatus.RESOURCE_UNAVAILABLE
        assert result.failure_type is None
        assert store.get("synthesis", "netlist") is None


def test_launch_error(monkeypatch):
    with tempfile.TemporaryDirectory() as workspace:
        invoker, _, _, rtl = _setup(workspace)

        def fake_run(command, cwd, timeout_sec, cancel_event=None):
            return {"returncode": None, "stdout": "", "stderr": "Launch error: [Errno 2] docker",
                    "timed_out": False, "cancelled": False, "launch_error": True, "command": command}

        monkeypatch.setattr(ti, "_run_process", fake_run)
        result = invoker.invoke(_stage("cat {in_rtl} > {out_netlist}"), 1, {"rtl": rtl})
        assert result.failure_type == FailureType.LAUNCH_ERROR
        assert "docker" in result.error_summary


def test_cancel_event_terminates_backend():
    with tempfile.TemporaryDirectory() as workspace:
        invoker, _, _, rtl = _setup(workspace)
        invoker.cancel_event.set()
        result = invoker.invoke(_stage("sleep 20"), 1, {"rtl": rtl})

        assert result.status == InvocationStatus.CANCELLED
        assert result.failure_type == FailureType.CANCELLED


def test_undeclared_files_are_logged_and_ignored(caplog):
    with tempfile.TemporaryDirectory() as workspace:
        invoker, store, _, rtl = _setup(workspace)
        caplog.set_level(logging.WARNING, logger="siliconstage.tools.tool_invoker")
        result = invoker.invoke(_stage("cat {in_rtl} > {out_netlist} && echo junk > scratch.txt"), 1, {"rtl": rtl})

        assert result.succeeded
        assert "scratch.txt" in caplog.text
        assert store.get("synthesis", "scratch") is None


def test_refined_constraints_are_published():
    with tempfile.TemporaryDirectory() as workspace:
        invoker, _, constraints, rtl = _setup(workspace)
        stage = _stage(
            "cat {in_rtl} > {out_netlist} && echo 'floorplan.utilization: 40' > {constraints_out}",
            name="floorplan",
            publishes_constraints=True,
        )
        result = invoker.invoke(stage, 1, {"rtl": rtl})

        assert result.succeeded
        assert result.published_version == 2
        assert constraints.history()[-1].publisher == "floorplan"
        assert constraints.resolve()["floorplan.utilization"] == 40


def test_concurrent_publish_is_a_constraint_conflict(monkeypatch):
    with tempfile.TemporaryDirectory() as workspace:
        invoker, store, constraints, rtl = _setup(workspace)

        def fake_run(command, cwd, timeout_sec, cancel_event=None):
            # Another writer moves the ledger while the backend runs.
            constraints.publish(2, {"clock.core": {"period_ns": 8.0, "port": "clk"}}, publisher="other")
            _write_file(os.path.join(cwd, "netlist.v"), "module counter; endmodule\n")
            _write_file(os.path.join(cwd, "constraints_out.yaml"), "floorplan.utilization: 40\n")
            return {"returncode": 0, "stdout": "", "stderr": "", "timed_out": False, "cancelled": False,
                    "launch_error": False, "command": command}

        monkeypatch.setattr(ti, "_run_process", fake_run)
        stage = _stage("run_floorplan {constraints_out} {out_netlist}", name="floorplan", publishes_constraints=True)
        result = invoker.invoke(stage, 1, {"rtl": rtl})

        assert result.failure_type == FailureType.CONSTRAINT_CONFLICT
        assert constraints.version == 2
        assert store.get("floorplan", "netlist") is None


def test_docker_image_maps_paths_into_container(monkeypatch):
    with tempfile.TemporaryDirectory() as workspace:
        invoker, _, _, rtl = _setup(workspace)
        seen = {}

        def fake_run(command, cwd, timeout_sec, cancel_event=None):
            seen["command"] = command
            _write_file(os.path.join(cwd, "netlist.v"), "module counter; endmodule\n")
            return {"returncode": 0, "stdout": "", "stderr": "", "timed_out": False, "cancelled": False,
                    "launch_error": False, "command": " ".join(command)}

        monkeypatch.setattr(ti, "_run_process", fake_run)
        stage = _stage("yosys -p 'read_verilog {in_rtl}; write_verilog {out_netlist}'", image="openroad/orfs:latest")
        assert invoker.invoke(stage, 1, {"rtl": rtl}).succeeded

        argv = seen["command"]
        assert argv[:3] == ["docker", "run", "--rm"]
        assert argv[argv.index("-w") + 1] == "/workspace/.flow/work/synthesis"
        assert "openroad/orfs:latest" in argv
        script = argv[-1]
        assert "/workspace/.flow/artifacts/objects/" in script
        assert "/workspace/.flow/work/synthesis/netlist.v" in script
        assert workspace not in script


def test_manifest_entry_written_around_invocation():
    with tempfile.TemporaryDirectory() as workspace:
        invoker, _, _, rtl = _setup(workspace)
        manifest = RunManifest.create(os.path.join(workspace, ".flow", "runs"))

        invoker.invoke(_stage("echo 'no license' >&2; exit 75"), 1, {"rtl": rtl}, manifest=manifest)
        invoker.invoke(_stage("cat {in_rtl} > {out_netlist}"), 1, {"rtl": rtl}, manifest=manifest)

        entry = RunManifest.load(manifest.path).get("synthesis")
        assert entry.status == "succeeded"
        assert entry.attempts == 2
        assert entry.log is None
        assert entry.produced == {"netlist": rtl.content_hash}
        assert entry.constraint_version == 1
        assert entry.tool_fingerprint


def test_failed_manifest_entry_keeps_verbatim_log():
    with tempfile.TemporaryDirectory() as workspace:
        invoker, _, _, rtl = _setup(workspace)
        manifest = RunManifest.create(os.path.join(workspace, ".flow", "runs"))
        invoker.invoke(_stage("echo 'ERROR: unroutable net n42' >&2; exit 1"), 1, {"rtl": rtl}, manifest=manifest)

        entry = manifest.get("synthesis")
        assert entry.status == "failed"
        assert entry.failure_type == FailureType.BACKEND_ERROR
        assert "ERROR: unroutable net n42" in entry.log


def test_command_template_validation():
    ti.validate_command_template(_stage("cat {in_rtl} > {out_netlist} # {top}"), {"top": "counter"})

    with pytest.raises(InvalidDescriptor, match="in_missing"):
        ti.validate_command_template(_stage("cat {in_missing} > {out_netlist}"))
    with pytest.raises(InvalidDescriptor, match="constraints_out"):
        ti.validate_command_template(_stage("cp x {constraints_out}"))
    with pytest.raises(InvalidDescriptor, match="shadow"):
        ti.validate_command_template(_stage("true"), {"stage": "x"})
    with pytest.raises(InvalidDescriptor, match="malformed"):
        ti.validate_command_template(_stage("awk '{print $1'"))


def test_tool_fingerprint_tracks_used_variables_only():
    stage = _stage("synth -top {top} {in_rtl} > {out_netlist}")
    base = ti.tool_fingerprint(stage, {"top": "counter", "pnr_tcl": "a.tcl"})
    assert ti.tool_fingerprint(stage, {"top": "counter", "pnr_tcl": "b.tcl"}) == base
    assert ti.tool_fingerprint(stage, {"top": "alu", "pnr_tcl": "a.tcl"}) != base
    assert ti.tool_fingerprint(_stage("synth -flatten -top {top} {in_rtl} > {out_netlist}"), {"top": "counter"}) != base
