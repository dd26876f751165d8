"""
Error taxonomy for flow orchestration.

GraphError and its subclasses are fatal before any stage runs. StageFailure,
ResourceUnavailable and VersionConflict are confined to one stage and end up
as entries in the run manifest rather than aborting the run.
"""

from typing import Iterable, Optional


class FlowError(Exception):
    """Base class for every orchestrator error."""


class GraphError(FlowError):
    """The flow cannot be built; no partial run is attempted."""


class DuplicateStage(GraphError):
    def __init__(self, stage: str):
        self.stage = stage
        super().__init__(f"Stage '{stage}' is already defined.")


class DuplicateOutput(GraphError):
    def __init__(self, kind: str, owner: str, claimant: str):
        self.kind = kind
        self.owner = owner
        self.claimant = claimant
        super().__init__(
            f"Artifact kind '{kind}' is already produced by '{owner}'; '{claimant}' cannot also produce it."
        )


class UnresolvedInput(GraphError):
    def __init__(self, stage: str, kind: str):
        self.stage = stage
        self.kind = kind
        super().__init__(f"Stage '{stage}' consumes '{kind}' but no stage or source produces it.")


class CycleDetected(GraphError):
    def __init__(self, stages: Iterable[str]):
        self.stages = sorted(stages)
        super().__init__(f"Dependency cycle among stages: {', '.join(self.stages)}")


class InvalidDescriptor(GraphError):
    """A stage or backend descriptor is malformed (bad name, path or command template)."""


class FlowConfigError(GraphError):
    """The flow definition file could not be read or validated."""


class MissingSource(GraphError):
    def __init__(self, kind: str, path: str):
        self.kind = kind
        self.path = path
        super().__init__(f"Source '{kind}' not found at {path}")


class ArtifactNotFound(FlowError, LookupError):
    def __init__(self, stage: str, kind: str):
        self.stage = stage
        self.kind = kind
        super().__init__(f"No artifact '{kind}' has been recorded for stage '{stage}'.")


class VersionConflict(FlowError):
    def __init__(self, expected: int, got: int):
        self.expected = expected
        self.got = got
        super().__init__(f"Constraint version {got} rejected; next version must be {expected}.")


class ResourceUnavailable(FlowError):
    def __init__(self, license_class: str, detail: str = ""):
        self.license_class = license_class
        msg = f"No free slot for license class '{license_class}'"
        super().__init__(f"{msg}: {detail}" if detail else msg)


class StageFailure(FlowError):
    def __init__(self, stage: str, failure_type: str, summary: str, exit_code: Optional[int] = None):
        self.stage = stage
        self.failure_type = failure_type
        self.summary = summary
        self.exit_code = exit_code
        super().__init__(f"[{stage}] {failure_type}: {summary}")
