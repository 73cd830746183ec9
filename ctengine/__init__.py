"""
ctsentinel - Static checker for speculative-execution-resistant crypto code.

Verifies, on a function-level control-flow IR of low-level cryptographic
code, that the constant-time coding guidelines are obeyed.

Rules:
    R1. Secret-dependent choice between constant-time and
        non-constant-time code paths (critical)
    R2. Indirect branches or calls inside constant-time regions (high)
    R3. Conditionally-executed scrubbing of secret state (critical)
    R4. Secret data held in global/static storage (high)

Pipeline:
    IR -> Taint Engine -> Region Classifier -> Call-graph shapes
       -> Detectors -> Report

Quick Start:
    >>> from ctengine import create_analyzer, load_module
    >>> analyzer = create_analyzer()
    >>> result = analyzer.analyze(load_module("module.yaml"))
    >>> print(f"Found {len(result.findings)} violations")

The analyzer only detects and reports; it never rewrites code.
"""

__version__ = "0.3.0"
__author__ = "ctsentinel"

from .errors import (
    CTAnalysisError, MalformedInput, ConfigurationError, AnalysisTimeout,
    Anomaly, AnomalyKind,
)
from .ir import (
    Sensitivity, StorageClass, Opcode, MemoryLocation, Parameter,
    Instruction, BasicBlock, Function, Module, validate_module,
)
from .ir_loader import IRLoader, load_module
from .models import Finding, AnalysisResult, RuleId, RunState, Severity
from .config import AnalyzerConfig, load_config
from .dataflow import TaintLabel, TaintValue, TaintEngine, FunctionTaint, Declassification
from .regions import RegionClassifier, RegionMap, ConstantTimeRegion, IndirectResolution
from .call_graph import CallGraph, CallGraphBuilder, ShapeClassifier, ShapeTable
from .analyzer import SpeculationAnalyzer, create_analyzer

__all__ = [
    # Core
    'SpeculationAnalyzer',
    'create_analyzer',
    'AnalyzerConfig',
    'load_config',
    # Report model
    'Finding',
    'AnalysisResult',
    'RuleId',
    'RunState',
    'Severity',
    # Errors
    'CTAnalysisError',
    'MalformedInput',
    'ConfigurationError',
    'AnalysisTimeout',
    'Anomaly',
    'AnomalyKind',
    # IR
    'Sensitivity',
    'StorageClass',
    'Opcode',
    'MemoryLocation',
    'Parameter',
    'Instruction',
    'BasicBlock',
    'Function',
    'Module',
    'validate_module',
    'IRLoader',
    'load_module',
    # Analysis components
    'TaintLabel',
    'TaintValue',
    'TaintEngine',
    'FunctionTaint',
    'Declassification',
    'RegionClassifier',
    'RegionMap',
    'ConstantTimeRegion',
    'IndirectResolution',
    'CallGraph',
    'CallGraphBuilder',
    'ShapeClassifier',
    'ShapeTable',
]
