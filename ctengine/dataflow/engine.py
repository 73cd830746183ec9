"""
Taint Engine - forward data-flow fixpoint over a function's CFG

Computes a TaintValue for every value of a function from its declared
parameter sensitivities. Value taints are global to the function (SSA);
memory taint is flow-sensitive and joined at control-flow merges.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional
import logging

from ..cfg import ControlFlowGraph
from ..ir import Function, Module, Opcode
from .taint_lattice import TaintLabel, TaintValue, TaintLattice, MemoryState
from .transfer_functions import TransferFunctions

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Declassification:
    """Audit record of an explicit declassification marker"""
    function_id: str
    block_id: str
    instruction_index: int
    input_value: str
    output_value: str
    input_label: TaintLabel

    def to_dict(self) -> Dict[str, object]:
        return {
            'function_id': self.function_id,
            'block_id': self.block_id,
            'instruction_index': self.instruction_index,
            'input_value': self.input_value,
            'output_value': self.output_value,
            'input_label': self.input_label.name.lower(),
        }


@dataclass
class FunctionTaint:
    """Converged taint information for one function"""
    function_id: str
    values: Dict[str, TaintValue] = field(default_factory=dict)
    memory_in: Dict[str, MemoryState] = field(default_factory=dict)
    declassifications: List[Declassification] = field(default_factory=list)
    rounds: int = 0

    def taint(self, value_id: Optional[str]) -> TaintValue:
        if value_id is None:
            return TaintValue.public()
        return self.values.get(value_id, TaintValue.public())

    def label(self, value_id: Optional[str]) -> TaintLabel:
        return self.taint(value_id).label

    def secret_values(self) -> List[str]:
        return sorted(v for v, t in self.values.items() if t.is_secret)


class TaintEngine:
    """
    Computes taint for functions of a module.

    Algorithm:
    1. Seed parameters from the declared sensitivity contour
    2. Visit blocks in reverse post-order (then unreachable blocks in order),
       joining predecessor memory states at block entry
    3. Apply transfer functions; a value or memory cell only changes when its
       label rises or it gains its first Secret chain
    4. Repeat until a full round changes nothing

    The lattice has height 3, so the number of rounds is bounded by the
    number of values and memory cells.
    """

    def __init__(self, module: Module):
        self.module = module

    def analyze_function(self, function: Function,
                         cfg: Optional[ControlFlowGraph] = None) -> FunctionTaint:
        """Run the fixpoint for one function"""
        cfg = cfg or ControlFlowGraph(function)
        transfer = TransferFunctions(self.module, function)
        result = FunctionTaint(function_id=function.id)

        values: Dict[str, TaintValue] = {}
        for param in function.params:
            label = TaintLabel.from_sensitivity(param.sensitivity)
            if label == TaintLabel.SECRET:
                values[param.value] = TaintValue.secret_source(param.value)
            else:
                values[param.value] = TaintValue(label)

        order = cfg.reverse_post_order()
        order.extend(b for b in cfg.blocks if b not in cfg.reachable)

        memory_out: Dict[str, MemoryState] = {}
        memory_in: Dict[str, MemoryState] = {}

        value_count = len(function.value_sites())
        cell_count = len(order) * max(1, len(transfer.locations))
        max_rounds = 4 * (value_count + cell_count) + 2

        changed = True
        rounds = 0
        while changed:
            rounds += 1
            if rounds > max_rounds:
                raise RuntimeError(
                    f"taint fixpoint for {function.id} did not converge in {max_rounds} rounds"
                )
            changed = False

            for block_id in order:
                state = MemoryState()
                for pred in cfg.preds(block_id):
                    if pred in memory_out:
                        state = state.join(memory_out[pred])
                memory_in[block_id] = state

                for instr in function.block(block_id).instructions:
                    step = transfer.transfer(instr, values, state)
                    state = step.memory
                    if step.output is None:
                        continue
                    old = values.get(step.output)
                    if old is None:
                        values[step.output] = step.taint
                        changed = True
                    elif TaintLattice.is_improvement(old, step.taint):
                        values[step.output] = TaintLattice.join(step.taint, old)
                        changed = True

                old_out = memory_out.get(block_id)
                if old_out is None:
                    memory_out[block_id] = state
                    changed = True
                elif state.improves_on(old_out):
                    memory_out[block_id] = old_out.join(state)
                    changed = True

        result.values = values
        result.memory_in = memory_in
        result.rounds = rounds
        result.declassifications = self._collect_declassifications(function, values)

        secret_count = sum(1 for t in values.values() if t.is_secret)
        logger.debug(f"Taint fixpoint for {function.id}: {rounds} rounds, "
                     f"{secret_count}/{len(values)} values secret")
        return result

    def _collect_declassifications(self, function: Function,
                                   values: Dict[str, TaintValue]) -> List[Declassification]:
        """Audit records for every declassification marker"""
        records = []
        for block, idx, instr in function.instructions():
            if instr.opcode != Opcode.DECLASSIFY:
                continue
            source = instr.inputs[0]
            record = Declassification(
                function_id=function.id,
                block_id=block.id,
                instruction_index=idx,
                input_value=source,
                output_value=instr.output,
                input_label=values.get(source, TaintValue.public()).label,
            )
            records.append(record)
            logger.debug(f"Declassified {source} ({record.input_label}) as {instr.output} "
                         f"in {function.id}:{block.id}")
        return records
