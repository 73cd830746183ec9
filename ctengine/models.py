"""
Report model for the speculation analyzer.

This module defines the structures produced by an analysis run:

- Severity: Enum for finding classification
- RuleId: The four guideline classes checked by the detectors
- Finding: A located violation with its taint provenance chain
- RunState: Lifecycle of an analysis run
- AnalysisResult: Complete run output

Findings are produced fresh per run and ordered by function id, then block
order, then instruction index.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, List, Dict, Any, Iterator, Tuple, TYPE_CHECKING

if TYPE_CHECKING:
    from .dataflow import Declassification
    from .errors import Anomaly


class Severity(Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"

    @property
    def priority(self) -> int:
        priorities = {
            Severity.CRITICAL: 5,
            Severity.HIGH: 4,
            Severity.MEDIUM: 3,
            Severity.LOW: 2,
            Severity.INFO: 1,
        }
        return priorities[self]


class RuleId(Enum):
    R1 = "R1"
    R2 = "R2"
    R3 = "R3"
    R4 = "R4"

    @property
    def title(self) -> str:
        titles = {
            RuleId.R1: "Secret-dependent path selection",
            RuleId.R2: "Indirect branch in constant-time region",
            RuleId.R3: "Conditional scrub",
            RuleId.R4: "Secret in global storage",
        }
        return titles[self]

    @property
    def default_severity(self) -> Severity:
        severities = {
            RuleId.R1: Severity.CRITICAL,
            RuleId.R2: Severity.HIGH,
            RuleId.R3: Severity.CRITICAL,
            RuleId.R4: Severity.HIGH,
        }
        return severities[self]

    @classmethod
    def parse(cls, value: str) -> 'RuleId':
        try:
            return cls(str(value).upper())
        except ValueError:
            raise ValueError(f"unknown rule id '{value}' (expected one of R1, R2, R3, R4)") from None


@dataclass(frozen=True)
class Finding:
    """A guideline violation at an instruction"""
    rule_id: RuleId
    function_id: str
    block_id: str
    block_index: int  # Position of the block in the function's block order
    instruction_index: int
    severity: Severity
    taint_provenance: Tuple[str, ...]
    description: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @property
    def sort_key(self) -> Tuple[str, int, int, str]:
        return (self.function_id, self.block_index, self.instruction_index, self.rule_id.value)

    @property
    def location(self) -> str:
        return f"{self.function_id}:{self.block_id}[{self.instruction_index}]"

    def to_dict(self) -> Dict[str, Any]:
        return {
            'rule_id': self.rule_id.value,
            'title': self.rule_id.title,
            'function_id': self.function_id,
            'block_id': self.block_id,
            'instruction_index': self.instruction_index,
            'severity': self.severity.value,
            'taint_provenance': list(self.taint_provenance),
            'description': self.description,
            'metadata': self.metadata,
        }


class RunState(Enum):
    """Lifecycle of an analysis run"""
    IDLE = "idle"
    LOADED = "loaded"
    TAINT_COMPUTED = "taint_computed"
    REGIONS_CLASSIFIED = "regions_classified"
    DETECTORS_RUN = "detectors_run"
    REPORTED = "reported"
    FAILED = "failed"


@dataclass
class AnalysisResult:
    """Result of an analysis run"""
    module_name: str
    findings: List[Finding] = field(default_factory=list)
    anomalies: List['Anomaly'] = field(default_factory=list)
    declassifications: List['Declassification'] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    state: RunState = RunState.IDLE
    state_history: List[RunState] = field(default_factory=list)
    timed_out: bool = False
    functions_analyzed: int = 0
    rules_applied: List[RuleId] = field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def failed(self) -> bool:
        return self.state == RunState.FAILED

    @property
    def succeeded(self) -> bool:
        return not self.failed

    @property
    def summary(self) -> Dict[str, int]:
        """Get count by severity"""
        counts = {s.value: 0 for s in Severity}
        for finding in self.findings:
            counts[finding.severity.value] += 1
        return counts

    def sort_findings(self) -> None:
        """
        Sort findings by function id, block_index, instruction index, rule id.

        block_index is the block's position in the function as the front end
        ordered it, so "entry" sorts before "b0" when it comes first. Block ids
        are never compared as strings.
        """
        self.findings.sort(key=lambda f: f.sort_key)

    def filter_by_severity(self, min_severity: Severity) -> List[Finding]:
        """Get findings at or above a minimum severity level."""
        return [f for f in self.findings if f.severity.priority >= min_severity.priority]

    def filter_by_rule(self, rule_id: RuleId) -> List[Finding]:
        return [f for f in self.findings if f.rule_id == rule_id]

    def filter_by_function(self, function_id: str) -> List[Finding]:
        return [f for f in self.findings if f.function_id == function_id]

    def highest_severity(self) -> Optional[Severity]:
        if not self.findings:
            return None
        return max((f.severity for f in self.findings), key=lambda s: s.priority)

    def has_critical_findings(self) -> bool:
        """Check if the run has any critical findings."""
        return any(f.severity == Severity.CRITICAL for f in self.findings)

    def __iter__(self) -> Iterator[Finding]:
        """Iterate over findings."""
        return iter(self.findings)

    def __len__(self) -> int:
        """Number of findings."""
        return len(self.findings)

    def to_dict(self) -> Dict[str, Any]:
        """Convert analysis result to dictionary."""
        return {
            'module': self.module_name,
            'state': self.state.value,
            'state_history': [s.value for s in self.state_history],
            'timed_out': self.timed_out,
            'findings': [f.to_dict() for f in self.findings],
            'anomalies': [a.to_dict() for a in self.anomalies],
            'declassifications': [d.to_dict() for d in self.declassifications],
            'functions_analyzed': self.functions_analyzed,
            'rules_applied': [r.value for r in self.rules_applied],
            'duration_seconds': self.duration_seconds,
            'errors': self.errors,
            'summary': self.summary,
        }
