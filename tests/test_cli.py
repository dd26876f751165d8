import os
import tempfile

from siliconstage import cli

from flow_fixture import write_file

FLOW_YAML = """
name: mini
workspace: build
sources:
  rtl: rtl/top.v
stages:
  synthesis:
    inputs: [rtl]
    outputs: {netlist: netlist.v}
    tool: {command: "cat {in_rtl} > {out_netlist}"}
  report:
    inputs: [netlist]
    outputs: {report: report.txt}
    tool: {command: "wc -c < {in_netlist} > {out_report}"}
"""


def _write_flow(tmp: str, text: str = FLOW_YAML) -> str:
    write_file(os.path.join(tmp, "rtl", "top.v"), "module top; endmodule\n")
    return write_file(os.path.join(tmp, "flow.yaml"), text)


def test_run_then_noop_rerun(capsys):
    with tempfile.TemporaryDirectory() as tmp:
        flow = _write_flow(tmp)

        assert cli.main(["run", flow]) == cli.EXIT_OK
        out = capsys.readouterr().out
        assert "Run run_0001 (mini): succeeded" in out
        assert "[OK] synthesis" in out

        assert cli.main(["run", flow]) == cli.EXIT_OK
        out = capsys.readouterr().out
        assert "reused from run_0001" in out
        assert os.path.isdir(os.path.join(tmp, "build", ".flow", "runs", "run_0002"))


def test_forced_stage_reruns(capsys):
    with tempfile.TemporaryDirectory() as tmp:
        flow = _write_flow(tmp)
        cli.main(["run", flow])
        capsys.readouterr()

        assert cli.main(["run", flow, "--force", "report"]) == cli.EXIT_OK
        out = capsys.readouterr().out
        assert "[OK] report - forced" in out


def test_failed_stage_exit_code(capsys):
    with tempfile.TemporaryDirectory() as tmp:
        flow = _write_flow(tmp, FLOW_YAML.replace('"cat {in_rtl} > {out_netlist}"', '"echo boom >&2; exit 4"'))

        assert cli.main(["run", flow]) == cli.EXIT_FAILED
        out = capsys.readouterr().out
        assert "[FAIL] synthesis - exit 4: boom" in out
        assert "[STALE] report" in out
        assert "Manifest:" in out


def test_graph_error_exit_code(capsys):
    with tempfile.TemporaryDirectory() as tmp:
        flow = _write_flow(tmp, FLOW_YAML.replace("inputs: [rtl]", "inputs: [report]"))
        assert cli.main(["run", flow]) == cli.EXIT_GRAPH_ERROR
        assert "cycle" in capsys.readouterr().err

        flow = _write_flow(tmp)
        assert cli.main(["run", flow, "--force", "drc"]) == cli.EXIT_GRAPH_ERROR
        assert "drc" in capsys.readouterr().err

        os.remove(os.path.join(tmp, "rtl", "top.v"))
        assert cli.main(["run", flow]) == cli.EXIT_GRAPH_ERROR


def test_status(capsys):
    with tempfile.TemporaryDirectory() as tmp:
        workspace = os.path.join(tmp, "build")
        assert cli.main(["status", "--workspace", workspace]) == cli.EXIT_FAILED
        assert "No runs recorded" in capsys.readouterr().out

        cli.main(["run", _write_flow(tmp)])
        capsys.readouterr()
        assert cli.main(["status", "--workspace", workspace]) == cli.EXIT_OK
        assert "Run run_0001 (mini): succeeded" in capsys.readouterr().out
