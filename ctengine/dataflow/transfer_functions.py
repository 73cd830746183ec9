"""
Transfer Functions - Define how taint propagates through instructions

Each opcode maps the current value taints and memory state to the taint
of its output value and the memory state after it executes.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, List, Optional
import logging

from ..ir import Function, Instruction, MemoryLocation, Module, Opcode
from .taint_lattice import TaintLabel, TaintValue, TaintLattice, MemoryState

logger = logging.getLogger(__name__)


@dataclass
class TransferResult:
    """Result of applying a transfer function"""
    memory: MemoryState
    output: Optional[str] = None
    taint: Optional[TaintValue] = None
    declassified: bool = False


class TransferFunctions:
    """Transfer functions for one function's instructions"""

    def __init__(self, module: Module, function: Function):
        self.module = module
        self.function = function
        self.locations: Dict[str, MemoryLocation] = module.locations_for(function)

        self._handlers: Dict[Opcode, Callable[..., TransferResult]] = {
            Opcode.COMPUTE: self._transfer_compute,
            Opcode.PHI: self._transfer_compute,
            Opcode.LOAD: self._transfer_load,
            Opcode.STORE: self._transfer_store,
            Opcode.CALL: self._transfer_call,
            Opcode.INDIRECT_CALL: self._transfer_indirect_call,
            Opcode.SCRUB: self._transfer_scrub,
            Opcode.DECLASSIFY: self._transfer_declassify,
        }

    def transfer(self, instr: Instruction, values: Dict[str, TaintValue],
                 memory: MemoryState) -> TransferResult:
        """Apply the transfer function for instr"""
        handler = self._handlers.get(instr.opcode)
        if handler is None:
            # Terminators and region markers define nothing and touch no memory
            return TransferResult(memory)
        return handler(instr, values, memory)

    def _taints(self, value_ids, values: Dict[str, TaintValue]) -> List[TaintValue]:
        """Current taint of each value (not-yet-computed values are Public)"""
        return [values.get(v, TaintValue.public()) for v in value_ids]

    def _result(self, instr: Instruction, taint: TaintValue,
                memory: MemoryState) -> TransferResult:
        if instr.output is None:
            return TransferResult(memory)
        return TransferResult(memory, instr.output, taint.extended(instr.output))

    # ------------------------------------------------------------------

    def _transfer_compute(self, instr: Instruction, values: Dict[str, TaintValue],
                          memory: MemoryState) -> TransferResult:
        """Pure computation and phi: join of all inputs"""
        taint = TaintLattice.join_all(self._taints(instr.inputs, values))
        return self._result(instr, taint, memory)

    def _transfer_load(self, instr: Instruction, values: Dict[str, TaintValue],
                       memory: MemoryState) -> TransferResult:
        """
        Load from a location.

        Declared-secret locations are Secret sources. Otherwise the result
        joins the location's own contents, the address operands, and Unknown
        for every tainted location that may alias this one.
        """
        loc = self.locations[instr.location]
        parts: List[TaintValue] = []
        if loc.secret and instr.output is not None:
            parts.append(TaintValue.secret_source(instr.output))
        parts.append(memory.get(loc.id))
        parts.extend(self._taints(instr.inputs, values))

        for other_id, content in memory.items():
            if other_id == loc.id or not content.is_tainted:
                continue
            other = self.locations.get(other_id)
            if other is not None and other.may_alias(loc):
                parts.append(TaintValue(TaintLabel.UNKNOWN, content.provenance))

        return self._result(instr, TaintLattice.join_all(parts), memory)

    def _transfer_store(self, instr: Instruction, values: Dict[str, TaintValue],
                        memory: MemoryState) -> TransferResult:
        """Store inputs[0] into the location (strong update on the named location)"""
        stored = values.get(instr.inputs[0], TaintValue.public())
        return TransferResult(memory.store(instr.location, stored))

    def _transfer_scrub(self, instr: Instruction, values: Dict[str, TaintValue],
                        memory: MemoryState) -> TransferResult:
        if instr.location is not None:
            memory = memory.clear(instr.location)
        return TransferResult(memory)

    def _transfer_declassify(self, instr: Instruction, values: Dict[str, TaintValue],
                             memory: MemoryState) -> TransferResult:
        return TransferResult(memory, instr.output, TaintValue.public(), declassified=True)

    def _transfer_call(self, instr: Instruction, values: Dict[str, TaintValue],
                       memory: MemoryState) -> TransferResult:
        args = self._taints(instr.call_arguments, values)
        taint = self._call_result(instr.callee, instr.output, args)
        return self._result(instr, taint, memory)

    def _transfer_indirect_call(self, instr: Instruction, values: Dict[str, TaintValue],
                                memory: MemoryState) -> TransferResult:
        """Join over every candidate callee, plus the callee pointer itself"""
        args = self._taints(instr.call_arguments, values)
        pointer = values.get(instr.indirect_target, TaintValue.public())
        candidates = instr.distinct_targets
        if candidates:
            parts = [self._call_result(c, instr.output, args) for c in candidates]
        else:
            parts = [TaintLattice.join_all([TaintValue.unknown()] + args)]
        parts.append(pointer)
        return self._result(instr, TaintLattice.join_all(parts), memory)

    def _call_result(self, callee_id: Optional[str], output: Optional[str],
                     args: List[TaintValue]) -> TaintValue:
        """Return taint of a call, from the callee's declared contour when it has one"""
        callee = self.module.function(callee_id) if callee_id else None
        if callee is None or callee.return_sensitivity is None:
            return TaintLattice.join_all(args)

        label = TaintLabel.from_sensitivity(callee.return_sensitivity)
        if label == TaintLabel.SECRET and output is not None:
            return TaintValue.secret_source(output)
        if label == TaintLabel.UNKNOWN:
            return TaintLattice.join_all([TaintValue.unknown()] + args)
        return TaintValue(label)
