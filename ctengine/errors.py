"""
Error taxonomy for the speculative-execution analyzer.

Only MalformedInput is fatal. Every other anomaly degrades to a conservative
result and is recorded as an Anomaly on the AnalysisResult instead of being
raised.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


class CTAnalysisError(Exception):
    """Base exception for analyzer errors."""
    def __init__(self, message: str, function_id: str = "", block_id: Optional[str] = None):
        self.message = message
        self.function_id = function_id
        self.block_id = block_id
        where = function_id
        if function_id and block_id:
            where = f"{function_id}:{block_id}"
        super().__init__(f"[{where}] {message}" if where else message)


class MalformedInput(CTAnalysisError):
    """Structural IR violation. Aborts the whole run."""
    pass


class ConfigurationError(CTAnalysisError):
    """Error in analyzer configuration."""
    pass


class AnalysisTimeout(CTAnalysisError):
    """Run-level timeout reached at a function boundary."""
    pass


class AnomalyKind(Enum):
    UNRESOLVED_INDIRECT_TARGET = "UnresolvedIndirectTarget"
    RECURSION_LIMIT_EXCEEDED = "RecursionLimitExceeded"


@dataclass(frozen=True)
class Anomaly:
    """A non-fatal condition that was resolved conservatively"""
    kind: AnomalyKind
    function_id: str
    detail: str
    block_id: Optional[str] = None
    instruction_index: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'kind': self.kind.value,
            'function_id': self.function_id,
            'block_id': self.block_id,
            'instruction_index': self.instruction_index,
            'detail': self.detail,
        }
