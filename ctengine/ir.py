"""
Intermediate representation consumed by the analyzer.

The IR is produced by an external front end (see ir_loader for the
serialized form) and is immutable for the lifetime of an analysis run:

- Module: functions plus module-level memory locations (globals, heap objects)
- Function: ordered basic blocks (first block is the entry), annotated
  parameters and an optional declared return sensitivity
- BasicBlock: ordered instructions ending in exactly one terminator
- Instruction: opcode, input value ids, at most one output value id

Values are SSA-style: each value id is defined exactly once, either as a
parameter or as the output of one instruction.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple, Iterator
import logging

from .errors import MalformedInput

logger = logging.getLogger(__name__)


class Sensitivity(Enum):
    """Externally declared sensitivity of a parameter or return position"""
    SECRET = "secret"
    PUBLIC = "public"
    UNKNOWN = "unknown"


class StorageClass(Enum):
    LOCAL = "local"
    HEAP = "heap"
    GLOBAL = "global"


class Opcode(Enum):
    COMPUTE = "compute"
    PHI = "phi"
    LOAD = "load"
    STORE = "store"
    CALL = "call"
    INDIRECT_CALL = "indirect_call"
    SCRUB = "scrub"
    DECLASSIFY = "declassify"
    REGION_START = "region_start"
    REGION_END = "region_end"
    # Terminators
    BRANCH = "branch"
    JUMP = "jump"
    FALLTHROUGH = "fallthrough"
    INDIRECT_BRANCH = "indirect_branch"
    RETURN = "return"

    @property
    def is_terminator(self) -> bool:
        return self in _TERMINATORS

    @property
    def is_indirect(self) -> bool:
        return self in (Opcode.INDIRECT_BRANCH, Opcode.INDIRECT_CALL)

    @property
    def is_region_marker(self) -> bool:
        return self in (Opcode.REGION_START, Opcode.REGION_END)


_TERMINATORS = frozenset({
    Opcode.BRANCH, Opcode.JUMP, Opcode.FALLTHROUGH,
    Opcode.INDIRECT_BRANCH, Opcode.RETURN,
})

# Opcodes that must define an output value
_REQUIRES_OUTPUT = frozenset({
    Opcode.COMPUTE, Opcode.PHI, Opcode.LOAD, Opcode.DECLASSIFY,
})

# Opcodes that must have at least one input value
_REQUIRES_INPUT = frozenset({
    Opcode.PHI, Opcode.STORE, Opcode.SCRUB, Opcode.DECLASSIFY,
    Opcode.BRANCH, Opcode.INDIRECT_BRANCH, Opcode.INDIRECT_CALL,
})


@dataclass(frozen=True)
class MemoryLocation:
    """A named memory location with its storage class"""
    id: str
    storage_class: StorageClass
    base: Optional[str] = None  # Base-value identity, None when unknown
    secret: bool = False  # Contents declared secret by the front end

    def may_alias(self, other: 'MemoryLocation') -> bool:
        """Check whether two locations can refer to the same memory"""
        if self.id == other.id:
            return True
        if self.base is None or other.base is None:
            return True
        return self.base == other.base


@dataclass(frozen=True)
class Parameter:
    """A function parameter and its declared sensitivity"""
    value: str
    sensitivity: Sensitivity = Sensitivity.UNKNOWN


@dataclass(frozen=True)
class Instruction:
    """A single IR instruction"""
    opcode: Opcode
    inputs: Tuple[str, ...] = ()
    output: Optional[str] = None
    targets: Tuple[str, ...] = ()  # Block ids, or callee names for indirect calls
    location: Optional[str] = None  # Memory location id for load/store/scrub
    callee: Optional[str] = None  # Direct call target

    @property
    def is_terminator(self) -> bool:
        return self.opcode.is_terminator

    @property
    def condition(self) -> Optional[str]:
        """Condition value of a conditional branch"""
        if self.opcode == Opcode.BRANCH and self.inputs:
            return self.inputs[0]
        return None

    @property
    def indirect_target(self) -> Optional[str]:
        """Computed target value of an indirect branch or call"""
        if self.opcode.is_indirect and self.inputs:
            return self.inputs[0]
        return None

    @property
    def call_arguments(self) -> Tuple[str, ...]:
        """Argument values of a direct or indirect call"""
        if self.opcode == Opcode.CALL:
            return self.inputs
        if self.opcode == Opcode.INDIRECT_CALL:
            return self.inputs[1:]
        return ()

    @property
    def distinct_targets(self) -> Tuple[str, ...]:
        """Targets with duplicates removed, in declaration order"""
        return tuple(dict.fromkeys(self.targets))

    def __str__(self) -> str:
        parts = [self.opcode.value]
        if self.output:
            parts.insert(0, f"{self.output} =")
        if self.callee:
            parts.append(self.callee)
        if self.inputs:
            parts.append(", ".join(self.inputs))
        if self.location:
            parts.append(f"@{self.location}")
        if self.targets:
            parts.append("-> " + ", ".join(self.targets))
        return " ".join(parts)


@dataclass(frozen=True)
class BasicBlock:
    """An ordered sequence of instructions with one terminator"""
    id: str
    instructions: Tuple[Instruction, ...] = ()

    @property
    def terminator(self) -> Optional[Instruction]:
        if self.instructions and self.instructions[-1].is_terminator:
            return self.instructions[-1]
        return None

    def marker_positions(self, opcode: Opcode) -> List[int]:
        """Indexes of the region markers of the given kind"""
        return [i for i, instr in enumerate(self.instructions) if instr.opcode == opcode]

    @property
    def starts_region(self) -> bool:
        return bool(self.marker_positions(Opcode.REGION_START))

    @property
    def ends_region(self) -> bool:
        return bool(self.marker_positions(Opcode.REGION_END))

    def __iter__(self) -> Iterator[Instruction]:
        return iter(self.instructions)

    def __len__(self) -> int:
        return len(self.instructions)


@dataclass(frozen=True)
class ValueSite:
    """Where a value is defined"""
    value_id: str
    block_id: Optional[str]  # None for parameters
    instruction_index: int = -1
    is_parameter: bool = False


@dataclass(frozen=True)
class Function:
    """A function: ordered basic blocks plus its sensitivity contour"""
    id: str
    blocks: Tuple[BasicBlock, ...]
    params: Tuple[Parameter, ...] = ()
    return_sensitivity: Optional[Sensitivity] = None
    locations: Tuple[MemoryLocation, ...] = ()

    # Indexes, derived from the fields above
    _block_index: Dict[str, int] = field(init=False, repr=False, compare=False, hash=False)

    def __post_init__(self):
        index: Dict[str, int] = {}
        for i, block in enumerate(self.blocks):
            index.setdefault(block.id, i)
        object.__setattr__(self, '_block_index', index)

    @property
    def entry(self) -> BasicBlock:
        if not self.blocks:
            raise MalformedInput("function has no blocks", self.id)
        return self.blocks[0]

    def block(self, block_id: str) -> BasicBlock:
        """Get a block by id"""
        try:
            return self.blocks[self._block_index[block_id]]
        except KeyError:
            raise MalformedInput(f"unknown block '{block_id}'", self.id) from None

    def block_index(self, block_id: str) -> int:
        """Position of a block in the front end's block order"""
        return self._block_index[block_id]

    def has_block(self, block_id: str) -> bool:
        return block_id in self._block_index

    def successors(self, block_id: str) -> Tuple[str, ...]:
        """Successor block ids derived from the block terminator"""
        block = self.block(block_id)
        term = block.terminator
        if term is None:
            raise MalformedInput("block has no terminator", self.id, block_id)
        if term.opcode in (Opcode.BRANCH, Opcode.JUMP, Opcode.INDIRECT_BRANCH):
            return term.distinct_targets
        if term.opcode == Opcode.FALLTHROUGH:
            idx = self._block_index[block_id]
            if idx + 1 >= len(self.blocks):
                raise MalformedInput("fallthrough from the last block", self.id, block_id)
            return (self.blocks[idx + 1].id,)
        return ()

    def is_exit(self, block_id: str) -> bool:
        """A block leaves the function (return or unresolved indirect branch)"""
        term = self.block(block_id).terminator
        if term is None:
            return False
        if term.opcode == Opcode.RETURN:
            return True
        return term.opcode == Opcode.INDIRECT_BRANCH and not term.targets

    def instructions(self) -> Iterator[Tuple[BasicBlock, int, Instruction]]:
        """Iterate (block, index, instruction) in block order"""
        for block in self.blocks:
            for idx, instr in enumerate(block.instructions):
                yield block, idx, instr

    def value_sites(self) -> Dict[str, ValueSite]:
        """Map every defined value id to its definition site"""
        sites: Dict[str, ValueSite] = {}
        for param in self.params:
            sites[param.value] = ValueSite(param.value, None, -1, True)
        for block, idx, instr in self.instructions():
            if instr.output is not None:
                sites.setdefault(instr.output, ValueSite(instr.output, block.id, idx))
        return sites

    def parameter(self, value_id: str) -> Optional[Parameter]:
        for param in self.params:
            if param.value == value_id:
                return param
        return None


@dataclass(frozen=True)
class Module:
    """A set of functions sharing module-level memory locations"""
    name: str
    functions: Tuple[Function, ...] = ()
    locations: Tuple[MemoryLocation, ...] = ()

    _function_index: Dict[str, Function] = field(init=False, repr=False, compare=False, hash=False)

    def __post_init__(self):
        object.__setattr__(self, '_function_index', {f.id: f for f in self.functions})

    def function(self, function_id: str) -> Optional[Function]:
        return self._function_index.get(function_id)

    def has_function(self, function_id: str) -> bool:
        return function_id in self._function_index

    def locations_for(self, function: Function) -> Dict[str, MemoryLocation]:
        """All memory locations visible to a function"""
        visible = {loc.id: loc for loc in self.locations}
        visible.update({loc.id: loc for loc in function.locations})
        return visible

    def sorted_functions(self) -> List[Function]:
        """Functions in ascending id order"""
        return sorted(self.functions, key=lambda f: f.id)


# ============================================================================
# Structural validation
# ============================================================================

def validate_module(module: Module) -> None:
    """Check module structure, raising MalformedInput on the first violation"""
    seen_functions = set()
    for function in module.functions:
        if function.id in seen_functions:
            raise MalformedInput(f"duplicate function id '{function.id}'")
        seen_functions.add(function.id)

    module_locations = set()
    for loc in module.locations:
        if loc.id in module_locations:
            raise MalformedInput(f"duplicate memory location '{loc.id}'")
        module_locations.add(loc.id)

    for function in module.functions:
        for loc in function.locations:
            if loc.id in module_locations:
                raise MalformedInput(
                    f"local location '{loc.id}' shadows a module location", function.id
                )
        validate_function(function, module)

    logger.debug(f"Validated module {module.name}: {len(module.functions)} functions")


def validate_function(function: Function, module: Optional[Module] = None) -> None:
    """Check a single function's structure"""
    fid = function.id
    if not function.blocks:
        raise MalformedInput("function has no blocks", fid)

    block_ids = set()
    for block in function.blocks:
        if block.id in block_ids:
            raise MalformedInput(f"duplicate block id '{block.id}'", fid)
        block_ids.add(block.id)

    location_ids = set()
    for loc in function.locations:
        if loc.id in location_ids:
            raise MalformedInput(f"duplicate memory location '{loc.id}'", fid)
        location_ids.add(loc.id)
    if module is not None:
        location_ids.update(loc.id for loc in module.locations)

    # Value definitions (SSA: exactly one definition per value)
    defined = set()
    for param in function.params:
        if param.value in defined:
            raise MalformedInput(f"duplicate parameter '{param.value}'", fid)
        defined.add(param.value)
    for block, idx, instr in function.instructions():
        if instr.output is not None:
            if instr.output in defined:
                raise MalformedInput(
                    f"value '{instr.output}' defined more than once", fid, block.id
                )
            defined.add(instr.output)

    last_index = len(function.blocks) - 1
    for position, block in enumerate(function.blocks):
        if not block.instructions:
            raise MalformedInput("empty block", fid, block.id)
        if block.terminator is None:
            raise MalformedInput("block has no terminator", fid, block.id)
        for idx, instr in enumerate(block.instructions):
            if instr.is_terminator and idx != len(block.instructions) - 1:
                raise MalformedInput(
                    f"terminator '{instr.opcode.value}' is not the last instruction", fid, block.id
                )
            _validate_instruction(function, block, instr, defined, block_ids, location_ids)
        term = block.terminator
        if term.opcode == Opcode.FALLTHROUGH and position == last_index:
            raise MalformedInput("fallthrough from the last block", fid, block.id)

    _validate_def_use_order(function)


def _validate_def_use_order(function: Function) -> None:
    """
    Every non-phi use must follow its definition.

    Within a block the definition comes first; across blocks the defining
    block dominates the using block. Unreachable blocks have no dominators,
    so only the in-block order is checked there.
    """
    from .cfg import ControlFlowGraph, DominatorTree

    fid = function.id
    cfg = ControlFlowGraph(function)
    dom = DominatorTree(cfg)
    sites = function.value_sites()

    for block, idx, instr in function.instructions():
        if instr.opcode == Opcode.PHI:
            continue
        for value_id in instr.inputs:
            site = sites[value_id]
            if site.is_parameter:
                continue
            if site.block_id == block.id:
                if site.instruction_index >= idx:
                    raise MalformedInput(
                        f"value '{value_id}' is used before its definition", fid, block.id
                    )
            elif block.id in cfg.reachable and not dom.dominates(site.block_id, block.id):
                raise MalformedInput(
                    f"definition of '{value_id}' in '{site.block_id}' does not dominate its use",
                    fid, block.id,
                )


def _validate_instruction(function: Function, block: BasicBlock, instr: Instruction,
                          defined: set, block_ids: set, location_ids: set) -> None:
    """Per-instruction operand checks"""
    fid = function.id
    op = instr.opcode

    if op in _REQUIRES_OUTPUT and instr.output is None:
        raise MalformedInput(f"'{op.value}' must define an output value", fid, block.id)
    if op in _REQUIRES_INPUT and not instr.inputs:
        raise MalformedInput(f"'{op.value}' requires an input value", fid, block.id)

    for value_id in instr.inputs:
        if value_id not in defined:
            raise MalformedInput(f"reference to undefined value '{value_id}'", fid, block.id)
        if value_id == instr.output and op != Opcode.PHI:
            raise MalformedInput(f"'{value_id}' is used by its own definition", fid, block.id)

    if op in (Opcode.LOAD, Opcode.STORE) and instr.location is None:
        raise MalformedInput(f"'{op.value}' requires a memory location", fid, block.id)
    if instr.location is not None and instr.location not in location_ids:
        raise MalformedInput(f"unknown memory location '{instr.location}'", fid, block.id)

    if op == Opcode.CALL and not instr.callee:
        raise MalformedInput("call requires a callee", fid, block.id)

    if op == Opcode.BRANCH and len(instr.targets) < 2:
        raise MalformedInput("conditional branch requires at least two targets", fid, block.id)
    if op == Opcode.JUMP and len(instr.targets) != 1:
        raise MalformedInput("jump requires exactly one target", fid, block.id)
    if op in (Opcode.BRANCH, Opcode.JUMP, Opcode.INDIRECT_BRANCH):
        for target in instr.targets:
            if target not in block_ids:
                raise MalformedInput(f"branch to unknown block '{target}'", fid, block.id)
