"""
Base classes for the guideline detectors.

Each detector is an independent pass over one function that consumes the
converged taint, region map and call-graph shape table, and yields
Findings for a single rule:

- Detector: common interface
- DetectorContext: everything a detector may read about one function
- DetectorRegistry: decorator-based registration keyed by rule id

Detectors never mutate the IR or the shared shape table.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Type
import logging

from ..call_graph import ShapeInspector, ShapeTable
from ..cfg import ControlFlowGraph, NaturalLoop, PostDominatorTree, find_natural_loops
from ..config import AnalyzerConfig
from ..dataflow import FunctionTaint
from ..ir import Function, Module
from ..models import Finding, RuleId
from ..regions import RegionMap

logger = logging.getLogger(__name__)


@dataclass
class DetectorContext:
    """Per-function analysis facts shared by all detectors"""
    module: Module
    function: Function
    cfg: ControlFlowGraph
    taint: FunctionTaint
    regions: RegionMap
    shapes: ShapeTable
    config: AnalyzerConfig = field(default_factory=AnalyzerConfig)

    _post_dominators: Optional[PostDominatorTree] = field(default=None, init=False, repr=False)
    _loops: Optional[List[NaturalLoop]] = field(default=None, init=False, repr=False)

    @property
    def post_dominators(self) -> PostDominatorTree:
        if self._post_dominators is None:
            self._post_dominators = PostDominatorTree(self.cfg)
        return self._post_dominators

    @property
    def loops(self) -> List[NaturalLoop]:
        if self._loops is None:
            self._loops = find_natural_loops(self.cfg)
        return self._loops

    def shape_inspector(self) -> ShapeInspector:
        return ShapeInspector(
            self.function, self.cfg, self.taint,
            callee_is_nct=self.shapes.is_non_constant_time,
            external_nct=frozenset(self.config.non_constant_time_functions),
            unresolved_call_is_nct=self.config.unresolved_indirect_call_is_non_constant_time,
            loops=self.loops,
        )

    def make_finding(self, rule_id: RuleId, block_id: str, instruction_index: int,
                     provenance: Sequence[str], description: str,
                     metadata: Optional[Dict[str, Any]] = None) -> Finding:
        return Finding(
            rule_id=rule_id,
            function_id=self.function.id,
            block_id=block_id,
            block_index=self.function.block_index(block_id),
            instruction_index=instruction_index,
            severity=rule_id.default_severity,
            taint_provenance=tuple(provenance),
            description=description,
            metadata=metadata or {},
        )


class Detector(ABC):
    """Abstract base class for a single-rule detector"""

    rule_id: RuleId

    @property
    def name(self) -> str:
        return self.rule_id.title

    @abstractmethod
    def detect(self, ctx: DetectorContext) -> List[Finding]:
        """Return the findings for one function"""
        pass

    def run(self, ctx: DetectorContext) -> List[Finding]:
        findings = self.detect(ctx)
        if findings:
            logger.debug(f"{self.rule_id.value} found {len(findings)} issue(s) in {ctx.function.id}")
        return findings


class DetectorRegistry:
    """
    Central registry for detectors.

    Usage:
        @DetectorRegistry.register(RuleId.R4)
        class GlobalStorageDetector(Detector):
            ...
    """

    _detectors: Dict[RuleId, Type[Detector]] = {}

    @classmethod
    def register(cls, rule_id: RuleId) -> Callable:
        def decorator(detector_class: Type[Detector]) -> Type[Detector]:
            detector_class.rule_id = rule_id
            cls._detectors[rule_id] = detector_class
            logger.debug(f"Registered detector: {detector_class.__name__} for {rule_id.value}")
            return detector_class
        return decorator

    @classmethod
    def get_detectors(cls, rule_ids: Optional[Iterable[RuleId]] = None) -> List[Detector]:
        """Instantiate the detectors for the given rules, in rule order"""
        wanted = set(rule_ids) if rule_ids is not None else set(cls._detectors)
        return [cls._detectors[r]() for r in sorted(cls._detectors, key=lambda r: r.value)
                if r in wanted]

    @classmethod
    def list_rules(cls) -> List[RuleId]:
        return sorted(cls._detectors, key=lambda r: r.value)
