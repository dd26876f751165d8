"""
Flow definitions - loading a flow file and building the scheduler for it.

A flow file is YAML:

    name: counter
    workspace: build
    variables: {top: counter}
    sources: {rtl: rtl/counter.v, testbench: tb/tb_counter.v}
    constraints:
      clock.core: {period_ns: 10, port: clk}
    limits: {max_parallel: 4, licenses: {synthesis: 1, pnr: 1}}
    stages:
      synthesis:
        inputs: [rtl]
        outputs: {netlist: netlist.v}
        tool: {command: "yosys ...", license_class: synthesis}

Unknown keys anywhere in the file are rejected.
"""

import dataclasses
import os
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from siliconstage.config import get_workspace_path
from siliconstage.errors import FlowConfigError
from siliconstage.graph.graph import StageGraph
from siliconstage.state.state import BackendDescriptor, StageDefinition
from siliconstage.tools.scheduler import Scheduler, SchedulerLimits


class FlowLimits(BaseModel):
    model_config = ConfigDict(extra="forbid")

    max_parallel: Optional[int] = Field(default=None, ge=1)
    licenses: Dict[str, int] = Field(default_factory=dict)
    resource_wait_sec: Optional[float] = Field(default=None, ge=0)

    @field_validator("licenses")
    @classmethod
    def _non_negative(cls, value: Dict[str, int]) -> Dict[str, int]:
        bad = [k for k, v in value.items() if v < 0]
        if bad:
            raise ValueError(f"license limits must be >= 0: {', '.join(bad)}")
        return value


class FlowDefinition(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = "flow"
    workspace: Optional[str] = None
    variables: Dict[str, str] = Field(default_factory=dict)
    sources: Dict[str, str] = Field(default_factory=dict)
    constraints: Dict[str, Any] = Field(default_factory=dict)
    limits: FlowLimits = Field(default_factory=FlowLimits)
    stages: List[StageDefinition] = Field(default_factory=list)

    @field_validator("variables", mode="before")
    @classmethod
    def _scalar_variables(cls, value: Any) -> Any:
        # YAML reads `clock_period: 10` as a number; commands only ever see text.
        if isinstance(value, dict):
            return {
                k: str(v) if isinstance(v, (bool, int, float)) else v
                for k, v in value.items()
            }
        return value

    @field_validator("stages", mode="before")
    @classmethod
    def _stages_from_mapping(cls, value: Any) -> Any:
        # The file form is {name: {inputs, outputs, tool}}.
        if isinstance(value, dict):
            out = []
            for name, body in value.items():
                if not isinstance(body, dict):
                    raise ValueError(f"stage '{name}' must be a mapping")
                if "name" in body and body["name"] != name:
                    raise ValueError(f"stage '{name}' declares a different name '{body['name']}'")
                out.append({**body, "name": name})
            return out
        return value


def parse_flow(text: str, base_dir: Optional[str] = None) -> FlowDefinition:
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise FlowConfigError(f"Flow file is not valid YAML: {exc}") from exc
    if not isinstance(data, dict):
        raise FlowConfigError("Flow file must contain a mapping at the top level")
    try:
        flow = FlowDefinition.model_validate(data)
    except ValidationError as exc:
        raise FlowConfigError(f"Invalid flow definition:\n{exc}") from exc

    if base_dir:
        # Relative paths in the file are relative to the file itself.
        updates: Dict[str, Any] = {
            "sources": {k: v if os.path.isabs(v) else os.path.join(base_dir, v) for k, v in flow.sources.items()}
        }
        if flow.workspace and not os.path.isabs(flow.workspace):
            updates["workspace"] = os.path.join(base_dir, flow.workspace)
        flow = flow.model_copy(update=updates)
    return flow


def load_flow(path: str) -> FlowDefinition:
    try:
        with open(path, "r", encoding="utf-8") as f:
            text = f.read()
    except OSError as exc:
        raise FlowConfigError(f"Cannot read flow file {path}: {exc}") from exc
    return parse_flow(text, base_dir=os.path.dirname(os.path.abspath(path)))


def build_graph(flow: FlowDefinition) -> StageGraph:
    graph = StageGraph()
    for kind, path in flow.sources.items():
        graph.add_source(kind, path)
    for stage in flow.stages:
        graph.add_stage(stage)
    graph.validate()
    return graph


def build_scheduler(flow: FlowDefinition, workspace: Optional[str] = None,
                    max_parallel: Optional[int] = None, limits: Optional[SchedulerLimits] = None) -> Scheduler:
    """
    Constructs the Scheduler for a flow. Graph errors surface here, before
    anything runs.
    """
    limits = dataclasses.replace(limits or SchedulerLimits())
    limits.licenses = {**flow.limits.licenses, **limits.licenses}
    if flow.limits.max_parallel is not None:
        limits.max_parallel = flow.limits.max_parallel
    if flow.limits.resource_wait_sec is not None:
        limits.resource_wait_sec = flow.limits.resource_wait_sec
    if max_parallel is not None:
        limits.max_parallel = max_parallel

    return Scheduler(
        graph=build_graph(flow),
        workspace=get_workspace_path(workspace or flow.workspace),
        limits=limits,
        base_constraints=flow.constraints,
        variables=flow.variables,
        flow_name=flow.name,
    )


# Commands for the reference RTL-to-GDS flow. Tool scripts (floorplan_tcl,
# pnr_tcl, sta_tcl) and cell models are flow variables.
REFERENCE_COMMANDS = {
    "synthesis": (
        'yosys -q -p "read_verilog -sv {in_rtl}; synth -top {top}; '
        'write_verilog -noattr {out_netlist}; tee -o {out_synth_stats} stat"'
    ),
    "equiv_check": (
        'yosys -q -p "read_verilog -sv {in_rtl}; prep -top {top}; design -stash gold; '
        "read_verilog {in_netlist}; prep -top {top}; design -stash gate; "
        "design -copy-from gold -as gold_top gold; design -copy-from gate -as gate_top gate; "
        "equiv_make gold_top gate_top equiv; hierarchy -top equiv; equiv_simple; "
        'tee -o {out_equiv_report} equiv_status -assert"'
    ),
    "floorplan": (
        "NETLIST={in_netlist} SDC={sdc} OUT_DB={out_floorplan_db} CONSTRAINTS_OUT={constraints_out} "
        "openroad -exit -no_splash {floorplan_tcl}"
    ),
    "place_route": (
        "IN_DB={in_floorplan_db} SDC={sdc} OUT_DB={out_routed_db} OUT_GDS={out_layout} "
        "OUT_SPEF={out_parasitics} openroad -exit -no_splash {pnr_tcl}"
    ),
    "timing_power": (
        "IN_DB={in_routed_db} SPEF={in_parasitics} SDC={sdc} TIMING_RPT={out_timing_report} "
        "POWER_RPT={out_power_report} openroad -exit -no_splash {sta_tcl}"
    ),
    "simulation": (
        "iverilog -g2012 -o rtl.vvp {in_testbench} {in_rtl} && vvp -n rtl.vvp > {out_sim_report} && "
        "iverilog -g2012 -o gate.vvp {in_testbench} {in_netlist} {cell_models} && vvp -n gate.vvp >> {out_sim_report} && "
        "grep -q 'TEST PASSED' {out_sim_report}"
    ),
}

REFERENCE_LICENSES = {
    "synthesis": "synthesis",
    "equiv_check": "formal",
    "floorplan": "pnr",
    "place_route": "pnr",
    "timing_power": "sta",
    "simulation": "simulation",
}


def create_reference_flow(
    rtl: str,
    testbench: str,
    top: str,
    commands: Optional[Dict[str, str]] = None,
    variables: Optional[Dict[str, str]] = None,
    constraints: Optional[Dict[str, Any]] = None,
    image: Optional[str] = None,
    timeout_sec: Optional[float] = None,
    name: str = "rtl2gds",
) -> FlowDefinition:
    """
    The six-stage RTL-to-layout flow:

        synthesis -> equiv_check
        synthesis -> floorplan -> place_route -> timing_power
        rtl + synthesis -> simulation

    Args:
        rtl: Path of the RTL source.
        testbench: Path of the simulation testbench.
        top: Top module name.
        commands: Per-stage command overrides.
        variables: Extra template variables (tool scripts, cell models).
        constraints: Base constraint directives.
        image: Docker image every backend runs in, if any.
        timeout_sec: Per-stage timeout override.
    """
    cmds = dict(REFERENCE_COMMANDS)
    cmds.update(commands or {})

    def tool(stage: str, publishes: bool = False) -> BackendDescriptor:
        fields = {"command": cmds[stage], "license_class": REFERENCE_LICENSES[stage], "image": image,
                  "publishes_constraints": publishes}
        if timeout_sec is not None:
            fields["timeout_sec"] = timeout_sec
        return BackendDescriptor(**fields)

    stages = [
        StageDefinition(name="synthesis", inputs=["rtl"],
                        outputs={"netlist": "netlist.v", "synth_stats": "synth_stat.txt"}, tool=tool("synthesis")),
        StageDefinition(name="equiv_check", inputs=["rtl", "netlist"],
                        outputs={"equiv_report": "equiv.rpt"}, tool=tool("equiv_check")),
        StageDefinition(name="floorplan", inputs=["netlist"],
                        outputs={"floorplan_db": "floorplan.odb"}, tool=tool("floorplan", publishes=True)),
        StageDefinition(name="place_route", inputs=["floorplan_db"],
                        outputs={"routed_db": "routed.odb", "layout": "layout.gds", "parasitics": "design.spef"},
                        tool=tool("place_route")),
        StageDefinition(name="timing_power", inputs=["routed_db", "parasitics"],
                        outputs={"timing_report": "timing.rpt", "power_report": "power.rpt"},
                        tool=tool("timing_power")),
        StageDefinition(name="simulation", inputs=["rtl", "testbench", "netlist"],
                        outputs={"sim_report": "sim.log"}, tool=tool("simulation")),
    ]

    merged_vars = {"top": top, "floorplan_tcl": "floorplan.tcl", "pnr_tcl": "pnr.tcl", "sta_tcl": "sta.tcl",
                   "cell_models": ""}
    merged_vars.update(variables or {})
    return FlowDefinition(
        name=name,
        variables=merged_vars,
        sources={"rtl": rtl, "testbench": testbench},
        constraints=dict(constraints or {"clock.core": {"period_ns": 10.0, "port": "clk"}}),
        limits=FlowLimits(licenses={"pnr": 1}),
        stages=stages,
    )
