"""
Taint propagation for the speculation analyzer

This package provides intra-procedural secret-taint tracking with:
- A three-point taint lattice (Public < Unknown < Secret) with provenance chains
- Transfer functions for every IR opcode, including a conservative alias model
- A forward fixed-point engine over each function's CFG
- Declassification audit records
"""

from .taint_lattice import (
    TaintLabel,
    TaintValue,
    TaintLattice,
    MemoryState,
)

from .transfer_functions import (
    TransferResult,
    TransferFunctions,
)

from .engine import (
    Declassification,
    FunctionTaint,
    TaintEngine,
)

__all__ = [
    # Taint Lattice
    'TaintLabel',
    'TaintValue',
    'TaintLattice',
    'MemoryState',
    # Transfer functions
    'TransferResult',
    'TransferFunctions',
    # Engine
    'Declassification',
    'FunctionTaint',
    'TaintEngine',
]
