import argparse
import logging
import os
import sys
from typing import List, Optional

from siliconstage.config import LOG_LEVEL, get_state_dir, get_workspace_path
from siliconstage.errors import GraphError
from siliconstage.graph.workflow import build_scheduler, load_flow
from siliconstage.state.state import StageStatus
from siliconstage.tools.run_manifest import RunManifest
from siliconstage.tools.scheduler import RUNS_DIRNAME

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_GRAPH_ERROR = 2

STATUS_ICONS = {
    StageStatus.SUCCEEDED.value: "[OK]",
    StageStatus.FAILED.value: "[FAIL]",
    StageStatus.STALE.value: "[STALE]",
    StageStatus.CANCELLED.value: "[CANCELLED]",
}


def _print_manifest(manifest: RunManifest) -> None:
    print(f"Run {manifest.run_id} ({manifest.flow_name}): {manifest.status}")
    for name, entry in manifest.stages.items():
        icon = STATUS_ICONS.get(entry.status, f"[{entry.status.upper()}]")
        note = f"reused from {entry.reused_from}" if entry.reused_from else (entry.reason or "")
        if entry.error_summary and entry.status != StageStatus.SUCCEEDED.value:
            note = entry.error_summary
        print(f"  {icon} {name}" + (f" - {note}" if note else ""))
    if manifest.status != "succeeded":
        print(f"Manifest: {manifest.path}")


def cmd_run(args: argparse.Namespace) -> int:
    try:
        flow = load_flow(args.flow)
        scheduler = build_scheduler(flow, workspace=args.workspace, max_parallel=args.max_parallel)
        unknown = sorted(set(args.force or ()) - set(scheduler.order))
        if unknown:
            print(f"Flow error: cannot force unknown stage(s): {', '.join(unknown)}", file=sys.stderr)
            return EXIT_GRAPH_ERROR
        manifest = scheduler.run(force=args.force or ())
    except GraphError as exc:
        print(f"Flow error: {exc}", file=sys.stderr)
        return EXIT_GRAPH_ERROR

    _print_manifest(manifest)
    return manifest.exit_code


def cmd_status(args: argparse.Namespace) -> int:
    runs_root = os.path.join(get_state_dir(get_workspace_path(args.workspace)), RUNS_DIRNAME)
    manifest = RunManifest.load_latest(runs_root)
    if manifest is None:
        print(f"No runs recorded under {runs_root}")
        return EXIT_FAILED
    _print_manifest(manifest)
    return manifest.exit_code


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="siliconstage", description="Incremental RTL-to-layout flow orchestrator")
    parser.add_argument("--log-level", default=LOG_LEVEL, help="Logging level (default: %(default)s)")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run the flow, re-executing only stale stages")
    run.add_argument("flow", help="Path to the flow definition (YAML)")
    run.add_argument("--workspace", help="Workspace directory (overrides the flow file)")
    run.add_argument("--max-parallel", type=int, help="Global ceiling on concurrently running stages")
    run.add_argument("--force", action="append", metavar="STAGE", help="Re-run STAGE even if it is clean")
    run.set_defaults(func=cmd_run)

    status = sub.add_parser("status", help="Show the latest run manifest")
    status.add_argument("--workspace", help="Workspace directory")
    status.set_defaults(func=cmd_status)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
