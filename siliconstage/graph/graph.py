from typing import Dict, List, Optional, Set

import networkx as nx

from siliconstage.errors import CycleDetected, DuplicateOutput, DuplicateStage, InvalidDescriptor, UnresolvedInput
from siliconstage.state.state import NAME_RE, SOURCE_STAGE, StageDefinition


class StageGraph:
    """
    Fixed set of stage definitions. Edges are never declared directly; a stage
    depends on whichever stage produces one of its input kinds.
    """

    def __init__(self):
        self.graph = nx.DiGraph()
        self._stages: Dict[str, StageDefinition] = {}
        self._producers: Dict[str, str] = {}
        self._sources: Dict[str, str] = {}

    def __contains__(self, name: str) -> bool:
        return name in self._stages

    def __len__(self) -> int:
        return len(self._stages)

    @property
    def stages(self) -> Dict[str, StageDefinition]:
        return dict(self._stages)

    @property
    def sources(self) -> Dict[str, str]:
        return dict(self._sources)

    def stage(self, name: str) -> StageDefinition:
        try:
            return self._stages[name]
        except KeyError:
            raise KeyError(f"Unknown stage '{name}'") from None

    def add_source(self, kind: str, path: str) -> None:
        if not NAME_RE.match(kind or ""):
            raise InvalidDescriptor(f"Source kind '{kind}' must match {NAME_RE.pattern}")
        if kind in self._producers:
            raise DuplicateOutput(kind, self._producers[kind], SOURCE_STAGE)
        self._producers[kind] = SOURCE_STAGE
        self._sources[kind] = path

    def add_stage(self, definition: StageDefinition) -> None:
        name = definition.name
        if name in self._stages:
            raise DuplicateStage(name)
        for kind in definition.outputs:
            owner = self._producers.get(kind)
            if owner is not None:
                raise DuplicateOutput(kind, owner, name)

        self._stages[name] = definition
        for kind in definition.outputs:
            self._producers[kind] = name
        self.graph.add_node(name)
        # Stages may be added in any order, so wire both directions.
        for kind in definition.inputs:
            producer = self._producers.get(kind)
            if producer is not None and producer != SOURCE_STAGE:
                self.graph.add_edge(producer, name)
        for other in self._stages.values():
            for kind in set(definition.outputs).intersection(other.inputs):
                self.graph.add_edge(name, other.name)

    def producer_of(self, kind: str) -> Optional[str]:
        return self._producers.get(kind)

    def dependencies_of(self, name: str) -> Set[str]:
        deps = set()
        for kind in self.stage(name).inputs:
            producer = self._producers.get(kind)
            if producer is None:
                raise UnresolvedInput(name, kind)
            if producer != SOURCE_STAGE:
                deps.add(producer)
        return deps

    def dependents_of(self, name: str) -> Set[str]:
        self.stage(name)
        return set(self.graph.successors(name))

    def ancestors_of(self, name: str) -> Set[str]:
        self.stage(name)
        return nx.ancestors(self.graph, name) - {name}

    def descendants_of(self, name: str) -> Set[str]:
        self.stage(name)
        return nx.descendants(self.graph, name) - {name}

    def topological_order(self) -> List[str]:
        for name in sorted(self._stages):
            self.dependencies_of(name)
        if not nx.is_directed_acyclic_graph(self.graph):
            raise CycleDetected(self._cyclic_stages())
        return list(nx.lexicographical_topological_sort(self.graph))

    def _cyclic_stages(self) -> Set[str]:
        # Stages on a cycle, plus those on a path from one cycle into another.
        on_cycle: Set[str] = set()
        for component in nx.strongly_connected_components(self.graph):
            if len(component) > 1:
                on_cycle |= component
        on_cycle |= set(nx.nodes_with_selfloops(self.graph))
        between = {
            node for node in self.graph
            if nx.ancestors(self.graph, node) & on_cycle and nx.descendants(self.graph, node) & on_cycle
        }
        return on_cycle | between

    def validate(self) -> List[str]:
        """Resolve every input and check acyclicity. Returns the topological order."""
        return self.topological_order()
