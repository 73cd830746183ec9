"""
Speculation Analyzer - orchestrates a full analysis run over a module

Pipeline (one direction only, the IR is never mutated):
    IR -> taint fixpoint -> region classification -> call-graph shapes
       -> detectors -> ordered findings

Per-function phases are data-parallel. The call-graph shape table is built
in a single sequential pass between region classification and the
detectors, and is read-only afterwards.
"""

from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Callable, Dict, List, Optional, TypeVar, Union
import logging

from .call_graph import CallGraphBuilder, ShapeClassifier, ShapeTable
from .cfg import ControlFlowGraph
from .config import AnalyzerConfig, load_config
from .dataflow import FunctionTaint, TaintEngine
from .detectors import DetectorContext, DetectorRegistry
from .errors import AnalysisTimeout, MalformedInput
from .ir import Function, Module, validate_module
from .ir_loader import IRLoader
from .models import AnalysisResult, Finding, RunState
from .regions import RegionClassifier, RegionMap

logger = logging.getLogger(__name__)

T = TypeVar('T')


class SpeculationAnalyzer:
    """
    Speculative-execution guideline analyzer.

    Lifecycle of a run:
        IDLE -> LOADED -> TAINT_COMPUTED -> REGIONS_CLASSIFIED
             -> DETECTORS_RUN -> REPORTED -> IDLE
    A MalformedInput at any stage moves the run to FAILED; a failed run
    reports the error and no findings.
    """

    def __init__(self, config: Optional[AnalyzerConfig] = None):
        self.config = config or AnalyzerConfig()
        self.state = RunState.IDLE
        self.detectors = DetectorRegistry.get_detectors(self.config.enabled_rules)

    def analyze_file(self, filepath: Union[str, Path]) -> AnalysisResult:
        """Load a serialized module and analyze it"""
        try:
            module = IRLoader().load_file(filepath)
        except MalformedInput as e:
            result = self._start(Path(filepath).stem)
            return self._fail(result, e)
        return self.analyze(module)

    def analyze(self, module: Module) -> AnalysisResult:
        """Run the full pipeline over a module"""
        result = self._start(module.name)
        deadline = None
        if self.config.timeout_seconds is not None:
            deadline = time.monotonic() + self.config.timeout_seconds
        started = time.monotonic()

        try:
            validate_module(module)
            functions = module.sorted_functions()
            cfgs = {f.id: ControlFlowGraph(f) for f in functions}
            self._transition(result, RunState.LOADED)
            logger.info(f"Analyzing module {module.name}: {len(functions)} functions, "
                        f"rules {', '.join(r.value for r in result.rules_applied)}")

            engine = TaintEngine(module)
            taints = self._per_function(
                "taint", functions, deadline, result,
                lambda f: engine.analyze_function(f, cfgs[f.id]),
            )
            self._transition(result, RunState.TAINT_COMPUTED)

            if not result.timed_out:
                regions = self._per_function(
                    "regions", functions, deadline, result,
                    lambda f: RegionClassifier(f, cfgs[f.id]).classify(),
                )
                self._transition(result, RunState.REGIONS_CLASSIFIED)

            if not result.timed_out:
                shapes = self._build_shape_table(module, cfgs, taints, result)
                findings = self._per_function(
                    "detectors", functions, deadline, result,
                    lambda f: self._run_detectors(module, f, cfgs[f.id], taints[f.id],
                                                  regions[f.id], shapes),
                )
                self._transition(result, RunState.DETECTORS_RUN)
                self._collect(result, functions, taints, regions, findings)

        except MalformedInput as e:
            return self._fail(result, e)
        except Exception:
            self.state = RunState.FAILED
            result.state = RunState.FAILED
            result.state_history.append(RunState.FAILED)
            result.findings = []
            raise

        result.duration_seconds = time.monotonic() - started
        self._transition(result, RunState.REPORTED)
        self.state = RunState.IDLE
        if result.timed_out:
            logger.warning(f"Analysis of {module.name} timed out after "
                           f"{self.config.timeout_seconds}s; {result.functions_analyzed}/"
                           f"{len(module.functions)} functions completed")
        logger.info(f"Analysis complete: {len(result.findings)} findings, "
                    f"{len(result.anomalies)} anomalies in {result.duration_seconds:.2f}s")
        return result

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _start(self, module_name: str) -> AnalysisResult:
        if self.state not in (RunState.IDLE, RunState.FAILED):
            raise RuntimeError(f"analysis already in progress (state {self.state.value})")
        self.state = RunState.IDLE
        result = AnalysisResult(module_name=module_name,
                                rules_applied=[d.rule_id for d in self.detectors])
        result.state_history.append(RunState.IDLE)
        return result

    def _transition(self, result: AnalysisResult, state: RunState):
        self.state = state
        result.state = state
        result.state_history.append(state)
        logger.debug(f"Run state -> {state.value}")

    def _fail(self, result: AnalysisResult, error: MalformedInput) -> AnalysisResult:
        logger.error(f"Malformed input: {error}")
        result.findings = []
        result.anomalies = []
        result.declassifications = []
        result.functions_analyzed = 0
        result.errors.append(str(error))
        self._transition(result, RunState.FAILED)
        return result

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def _per_function(self, phase: str, functions: List[Function], deadline: Optional[float],
                      result: AnalysisResult, task: Callable[[Function], T]) -> Dict[str, T]:
        """
        Run task for every function, in parallel when configured.

        The deadline is checked before each function starts; functions that
        had not started when it expired are left out of the returned map.
        """
        def guarded(function: Function) -> T:
            if deadline is not None and time.monotonic() > deadline:
                raise AnalysisTimeout(f"deadline reached before {phase}", function.id)
            return task(function)

        outputs: Dict[str, T] = {}
        if self.config.max_workers > 1 and len(functions) > 1:
            with ThreadPoolExecutor(max_workers=self.config.max_workers) as executor:
                future_to_function = {executor.submit(guarded, f): f for f in functions}
                for future in as_completed(future_to_function):
                    function = future_to_function[future]
                    try:
                        outputs[function.id] = future.result()
                    except AnalysisTimeout:
                        result.timed_out = True
        else:
            for function in functions:
                try:
                    outputs[function.id] = guarded(function)
                except AnalysisTimeout:
                    result.timed_out = True
                    break

        logger.debug(f"Phase {phase}: {len(outputs)}/{len(functions)} functions")
        return outputs

    def _build_shape_table(self, module: Module, cfgs: Dict[str, ControlFlowGraph],
                           taints: Dict[str, FunctionTaint], result: AnalysisResult) -> ShapeTable:
        """Sequential, bottom-up shape classification"""
        call_graph = CallGraphBuilder().build(module)
        classifier = ShapeClassifier(
            module, call_graph, taints, cfgs,
            max_call_depth=self.config.max_call_depth,
            external_nct=self.config.non_constant_time_functions,
            unresolved_call_is_nct=self.config.unresolved_indirect_call_is_non_constant_time,
        )
        shapes = classifier.classify()
        result.anomalies.extend(classifier.anomalies)
        return shapes

    def _run_detectors(self, module: Module, function: Function, cfg: ControlFlowGraph,
                       taint: FunctionTaint, regions: RegionMap, shapes: ShapeTable) -> List[Finding]:
        ctx = DetectorContext(
            module=module,
            function=function,
            cfg=cfg,
            taint=taint,
            regions=regions,
            shapes=shapes,
            config=self.config,
        )
        findings: List[Finding] = []
        for detector in self.detectors:
            findings.extend(detector.run(ctx))
        return findings

    def _collect(self, result: AnalysisResult, functions: List[Function],
                 taints: Dict[str, FunctionTaint], regions: Dict[str, RegionMap],
                 findings: Dict[str, List[Finding]]):
        """Gather per-function outputs in function id order"""
        shape_anomalies = result.anomalies
        result.anomalies = []
        for function in functions:
            if function.id in regions:
                result.anomalies.extend(regions[function.id].anomalies)
        result.anomalies.extend(shape_anomalies)

        for function in functions:
            if function.id not in findings:
                continue
            result.functions_analyzed += 1
            result.declassifications.extend(taints[function.id].declassifications)
            result.findings.extend(
                f for f in findings[function.id]
                if f.severity.priority >= self.config.min_severity.priority
            )
        result.sort_findings()


def create_analyzer(config_path: Optional[Union[str, Path]] = None,
                    **overrides) -> SpeculationAnalyzer:
    """Factory function to create and configure an analyzer

    Args:
        config_path: Optional YAML configuration file
        **overrides: AnalyzerConfig fields that take precedence over the file
            (enabled_rules, max_call_depth, max_workers, timeout_seconds,
            non_constant_time_functions, min_severity, ...)

    Returns:
        Configured SpeculationAnalyzer instance
    """
    config = load_config(config_path) if config_path else AnalyzerConfig()
    if overrides:
        config = config.with_overrides(**overrides)
    return SpeculationAnalyzer(config)
