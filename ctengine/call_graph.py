"""
Call Graph Constructor - call relationships and constant-time shape classification

A function (or a path within one) is non-constant-time-shaped when it
contains a branch or loop exit whose condition may depend on secret data,
or calls something that is. Shapes are computed bottom-up over the call
graph: strongly connected components are visited in reverse topological
order so every callee is classified before its callers, and recursive
cycles are resolved conservatively as non-constant-time-shaped.
"""

from __future__ import annotations

from collections import abc
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Dict, FrozenSet, Iterable, Iterator, List, Mapping, Optional, Set, Tuple
import logging

from .cfg import ControlFlowGraph, NaturalLoop, find_natural_loops
from .dataflow import FunctionTaint
from .errors import Anomaly, AnomalyKind
from .ir import Function, Module, Opcode

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CallSite:
    """A call instruction and the callee it may reach"""
    caller: str
    callee: str
    block_id: str
    instruction_index: int
    indirect: bool = False


@dataclass
class CallGraphNode:
    """Node in the call graph representing a module function"""
    function_id: str
    callers: Set[str] = field(default_factory=set)
    callees: Set[str] = field(default_factory=set)
    call_sites: List[CallSite] = field(default_factory=list)
    external_callees: Set[str] = field(default_factory=set)


class CallGraph:
    """
    Represents the call graph of a module.
    Maps functions to their callers and callees; calls to functions outside
    the module are kept per node as external callees.
    """

    def __init__(self):
        self.nodes: Dict[str, CallGraphNode] = {}

    def add_function(self, function_id: str) -> CallGraphNode:
        if function_id not in self.nodes:
            self.nodes[function_id] = CallGraphNode(function_id=function_id)
        return self.nodes[function_id]

    def add_call(self, site: CallSite, internal: bool = True):
        """Add a call edge to the graph"""
        caller = self.add_function(site.caller)
        caller.call_sites.append(site)
        if not internal:
            caller.external_callees.add(site.callee)
            return
        callee = self.add_function(site.callee)
        caller.callees.add(site.callee)
        callee.callers.add(site.caller)

    def get_callees(self, function_id: str) -> List[str]:
        node = self.nodes.get(function_id)
        return sorted(node.callees) if node else []

    def get_callers(self, function_id: str) -> List[str]:
        node = self.nodes.get(function_id)
        return sorted(node.callers) if node else []

    def is_self_recursive(self, function_id: str) -> bool:
        node = self.nodes.get(function_id)
        return bool(node) and function_id in node.callees

    def strongly_connected_components(self) -> List[List[str]]:
        """
        Tarjan's algorithm, iterative.

        Components come out in reverse topological order: every component
        is emitted after all components it calls into.
        """
        index: Dict[str, int] = {}
        lowlink: Dict[str, int] = {}
        on_stack: Set[str] = set()
        stack: List[str] = []
        components: List[List[str]] = []
        counter = 0

        for root in sorted(self.nodes):
            if root in index:
                continue
            work = [(root, iter(sorted(self.nodes[root].callees)))]
            index[root] = lowlink[root] = counter
            counter += 1
            stack.append(root)
            on_stack.add(root)

            while work:
                node, callees = work[-1]
                for callee in callees:
                    if callee not in index:
                        index[callee] = lowlink[callee] = counter
                        counter += 1
                        stack.append(callee)
                        on_stack.add(callee)
                        work.append((callee, iter(sorted(self.nodes[callee].callees))))
                        break
                    if callee in on_stack:
                        lowlink[node] = min(lowlink[node], index[callee])
                else:
                    work.pop()
                    if work:
                        parent = work[-1][0]
                        lowlink[parent] = min(lowlink[parent], lowlink[node])
                    if lowlink[node] == index[node]:
                        component = []
                        while True:
                            member = stack.pop()
                            on_stack.discard(member)
                            component.append(member)
                            if member == node:
                                break
                        components.append(sorted(component))
        return components

    def stats(self) -> Dict[str, int]:
        """Get call graph statistics"""
        return {
            'total_functions': len(self.nodes),
            'total_edges': sum(len(n.callees) for n in self.nodes.values()),
            'total_call_sites': sum(len(n.call_sites) for n in self.nodes.values()),
            'external_callees': len({c for n in self.nodes.values() for c in n.external_callees}),
        }


class CallGraphBuilder:
    """Builds a call graph from a module"""

    def build(self, module: Module) -> CallGraph:
        graph = CallGraph()
        for function in module.functions:
            graph.add_function(function.id)

        for function in module.functions:
            for block, idx, instr in function.instructions():
                if instr.opcode == Opcode.CALL:
                    callees: Iterable[str] = (instr.callee,)
                    indirect = False
                elif instr.opcode == Opcode.INDIRECT_CALL:
                    callees = instr.distinct_targets
                    indirect = True
                else:
                    continue
                for callee in callees:
                    site = CallSite(function.id, callee, block.id, idx, indirect)
                    graph.add_call(site, internal=module.has_function(callee))

        logger.debug(f"Call graph for {module.name}: {graph.stats()}")
        return graph


# ============================================================================
# Shape classification
# ============================================================================

class ShapeReason(Enum):
    """Why a function or path is non-constant-time-shaped"""
    SECRET_BRANCH = "secret-dependent branch"
    SECRET_LOOP = "secret-dependent loop bound"
    NCT_CALLEE = "call to a non-constant-time function"
    EXTERNAL_NCT_CALLEE = "call to a known non-constant-time routine"
    UNRESOLVED_INDIRECT_CALL = "unresolved indirect call"
    RECURSION = "recursive call cycle"
    RECURSION_LIMIT = "call depth limit exceeded"


@dataclass(frozen=True)
class ShapeEvidence:
    """One reason, located at a block"""
    reason: ShapeReason
    block_id: Optional[str] = None
    detail: str = ""

    def __str__(self):
        where = f" in {self.block_id}" if self.block_id else ""
        extra = f" ({self.detail})" if self.detail else ""
        return f"{self.reason.value}{where}{extra}"


@dataclass(frozen=True)
class FunctionShape:
    """Constant-time shape of a function"""
    function_id: str
    evidence: Tuple[ShapeEvidence, ...] = ()

    @property
    def non_constant_time(self) -> bool:
        return bool(self.evidence)

    @property
    def reasons(self) -> Tuple[ShapeReason, ...]:
        return tuple(dict.fromkeys(e.reason for e in self.evidence))

    def to_dict(self) -> Dict[str, object]:
        return {
            'function_id': self.function_id,
            'non_constant_time': self.non_constant_time,
            'reasons': [str(e) for e in self.evidence],
        }


class ShapeTable(abc.Mapping):
    """Read-only function id -> FunctionShape table, shared across workers"""

    def __init__(self, shapes: Dict[str, FunctionShape]):
        self._shapes = MappingProxyType(dict(shapes))

    def __getitem__(self, function_id: str) -> FunctionShape:
        return self._shapes[function_id]

    def __iter__(self) -> Iterator[str]:
        return iter(self._shapes)

    def __len__(self) -> int:
        return len(self._shapes)

    def is_non_constant_time(self, function_id: str) -> bool:
        shape = self._shapes.get(function_id)
        return shape is not None and shape.non_constant_time


class ShapeInspector:
    """
    Finds non-constant-time evidence in a set of blocks of one function.

    Used both for whole-function classification and for the arm paths of
    a secret-dependent branch.
    """

    def __init__(self, function: Function, cfg: ControlFlowGraph, taint: FunctionTaint,
                 callee_is_nct, external_nct: FrozenSet[str],
                 unresolved_call_is_nct: bool = True,
                 loops: Optional[List[NaturalLoop]] = None):
        self.function = function
        self.cfg = cfg
        self.taint = taint
        self.callee_is_nct = callee_is_nct
        self.external_nct = external_nct
        self.unresolved_call_is_nct = unresolved_call_is_nct
        self.loops = loops if loops is not None else find_natural_loops(cfg)

    def evidence(self, blocks: Iterable[str]) -> List[ShapeEvidence]:
        """Evidence found in the given blocks"""
        block_set = set(blocks)
        found: List[ShapeEvidence] = []
        for block in self.function.blocks:
            if block.id not in block_set:
                continue
            for instr in block.instructions:
                if instr.opcode == Opcode.BRANCH and self.taint.label(instr.condition).is_tainted:
                    found.append(ShapeEvidence(ShapeReason.SECRET_BRANCH, block.id,
                                               f"condition {instr.condition}"))
                elif instr.opcode == Opcode.INDIRECT_BRANCH and len(instr.distinct_targets) > 1 \
                        and self.taint.label(instr.indirect_target).is_tainted:
                    found.append(ShapeEvidence(ShapeReason.SECRET_BRANCH, block.id,
                                               f"target {instr.indirect_target}"))
                elif instr.opcode == Opcode.CALL:
                    found.extend(self._call_evidence(block.id, (instr.callee,)))
                elif instr.opcode == Opcode.INDIRECT_CALL:
                    if not instr.targets:
                        if self.unresolved_call_is_nct:
                            found.append(ShapeEvidence(ShapeReason.UNRESOLVED_INDIRECT_CALL, block.id,
                                                       f"through {instr.indirect_target}"))
                    else:
                        found.extend(self._call_evidence(block.id, instr.distinct_targets))

        for loop in self.loops:
            if loop.header not in block_set:
                continue
            for exiting in loop.exiting_blocks(self.cfg):
                term = self.function.block(exiting).terminator
                bound = term.condition if term.opcode == Opcode.BRANCH else term.indirect_target
                if bound is not None and self.taint.label(bound).is_tainted:
                    found.append(ShapeEvidence(ShapeReason.SECRET_LOOP, loop.header,
                                               f"exit on {bound} in {exiting}"))
                    break
        return found

    def _call_evidence(self, block_id: str, callees: Iterable[str]) -> List[ShapeEvidence]:
        found = []
        for callee in callees:
            if callee in self.external_nct:
                found.append(ShapeEvidence(ShapeReason.EXTERNAL_NCT_CALLEE, block_id, callee))
            elif self.callee_is_nct(callee):
                found.append(ShapeEvidence(ShapeReason.NCT_CALLEE, block_id, callee))
        return found


class ShapeClassifier:
    """
    Bottom-up constant-time shape classification.

    Must run in a single sequential pass after taint is computed for every
    function; the resulting ShapeTable is immutable.
    """

    def __init__(self, module: Module, call_graph: CallGraph,
                 taints: Mapping[str, FunctionTaint],
                 cfgs: Optional[Mapping[str, ControlFlowGraph]] = None,
                 max_call_depth: int = 32,
                 external_nct: Iterable[str] = (),
                 unresolved_call_is_nct: bool = True):
        self.module = module
        self.call_graph = call_graph
        self.taints = taints
        self.cfgs = cfgs or {}
        self.max_call_depth = max_call_depth
        self.external_nct = frozenset(external_nct)
        self.unresolved_call_is_nct = unresolved_call_is_nct
        self.anomalies: List[Anomaly] = []

    def classify(self) -> ShapeTable:
        shapes: Dict[str, FunctionShape] = {}
        depth: Dict[str, int] = {}

        for component in self.call_graph.strongly_connected_components():
            recursive = len(component) > 1 or self.call_graph.is_self_recursive(component[0])
            outside = {c for fid in component for c in self.call_graph.get_callees(fid)
                       if c not in component}
            # Call-chain depth: callees first, a cycle counts each member once
            component_depth = max((depth[c] + 1 for c in outside), default=0)
            if recursive:
                component_depth += len(component)
            for fid in component:
                depth[fid] = component_depth

            for fid in component:
                evidence: List[ShapeEvidence] = []
                if recursive:
                    evidence.append(ShapeEvidence(ShapeReason.RECURSION, None,
                                                  " -> ".join(component)))
                if component_depth > self.max_call_depth and \
                        all(depth[c] <= self.max_call_depth for c in outside):
                    evidence.append(ShapeEvidence(ShapeReason.RECURSION_LIMIT, None,
                                                  f"depth {component_depth} > {self.max_call_depth}"))
                    self._record_depth_anomaly(fid, component_depth)

                evidence.extend(self._body_evidence(fid, shapes))
                shapes[fid] = FunctionShape(fid, tuple(evidence))

        nct = sum(1 for s in shapes.values() if s.non_constant_time)
        logger.info(f"Shape classification: {nct}/{len(shapes)} functions non-constant-time-shaped")
        return ShapeTable(shapes)

    def inspector_for(self, function: Function, shapes: Mapping[str, FunctionShape]) -> ShapeInspector:
        def callee_is_nct(callee: str) -> bool:
            shape = shapes.get(callee)
            return shape is not None and shape.non_constant_time

        cfg = self.cfgs.get(function.id) or ControlFlowGraph(function)
        return ShapeInspector(function, cfg, self.taints[function.id], callee_is_nct,
                              self.external_nct, self.unresolved_call_is_nct)

    def _body_evidence(self, fid: str, shapes: Mapping[str, FunctionShape]) -> List[ShapeEvidence]:
        function = self.module.function(fid)
        if function is None or fid not in self.taints:
            return []
        inspector = self.inspector_for(function, shapes)
        return inspector.evidence(inspector.cfg.reachable)

    def _record_depth_anomaly(self, fid: str, component_depth: int):
        anomaly = Anomaly(
            kind=AnomalyKind.RECURSION_LIMIT_EXCEEDED,
            function_id=fid,
            detail=f"call chain depth {component_depth} exceeds bound {self.max_call_depth}",
        )
        self.anomalies.append(anomaly)
        logger.warning(f"Recursion limit exceeded in {fid}: depth {component_depth} "
                       f"> {self.max_call_depth}, treating as non-constant-time")


def build_call_graph(module: Module) -> CallGraph:
    """Convenience function to build a call graph"""
    return CallGraphBuilder().build(module)
