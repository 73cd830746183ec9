"""
Region Classifier - constant-time region membership and indirect-target resolution

Decides, per basic block, whether it lies inside an explicitly annotated
constant-time region, and classifies every indirect branch and indirect
call by how many destinations it can reach.

Regions:
- open at a block carrying region_start and grow along successors
- stop after blocks carrying region_end
- cover instructions from the region_start marker up to the region_end
  marker; the rest of those two blocks lies outside
- never nest, and are only entered through their start block

Any violation of these rules is a MalformedInput error, never a silent
override.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Set, Tuple
import logging

from .cfg import ControlFlowGraph
from .errors import Anomaly, AnomalyKind, MalformedInput
from .ir import BasicBlock, Function, Opcode

logger = logging.getLogger(__name__)


class IndirectResolution(Enum):
    """How many destinations an indirect site can reach"""
    RESOLVED = "resolved"      # Exactly one target, treated as direct
    MULTIPLE = "multiple"      # Several statically known targets
    UNRESOLVED = "unresolved"  # No statically determinable bound


@dataclass(frozen=True)
class IndirectSite:
    """An indirect branch or indirect call instruction"""
    function_id: str
    block_id: str
    instruction_index: int
    opcode: Opcode
    target_value: Optional[str]
    targets: Tuple[str, ...]
    resolution: IndirectResolution
    in_region: bool = False

    @property
    def is_call(self) -> bool:
        return self.opcode == Opcode.INDIRECT_CALL

    @property
    def is_dynamic(self) -> bool:
        """Not statically resolvable to a single destination"""
        return self.resolution != IndirectResolution.RESOLVED


@dataclass(frozen=True)
class ConstantTimeRegion:
    """A single-entry, non-nested subgraph marked constant-time"""
    entry: str
    blocks: FrozenSet[str]
    exits: Tuple[str, ...]

    def __contains__(self, block_id: str) -> bool:
        return block_id in self.blocks

    def __len__(self) -> int:
        return len(self.blocks)


@dataclass
class RegionMap:
    """Region and indirect-site classification of one function"""
    function_id: str
    regions: List[ConstantTimeRegion] = field(default_factory=list)
    indirect_sites: List[IndirectSite] = field(default_factory=list)
    anomalies: List[Anomaly] = field(default_factory=list)
    _membership: Dict[str, ConstantTimeRegion] = field(default_factory=dict, repr=False)

    def in_constant_time_region(self, block_id: str) -> bool:
        return block_id in self._membership

    def region_of(self, block_id: str) -> Optional[ConstantTimeRegion]:
        return self._membership.get(block_id)

    def covers_instruction(self, block: BasicBlock, index: int) -> bool:
        """
        Instruction-level membership.

        Instructions before region_start in the region's entry block, or after
        region_end in an exit block, run outside the region.
        """
        region = self.region_of(block.id)
        if region is None:
            return False
        if block.id == region.entry and index < block.marker_positions(Opcode.REGION_START)[0]:
            return False
        ends = block.marker_positions(Opcode.REGION_END)
        return not (ends and index > ends[0])

    def unresolved_sites(self) -> List[IndirectSite]:
        return [s for s in self.indirect_sites if s.resolution == IndirectResolution.UNRESOLVED]


class RegionClassifier:
    """Classifies the blocks and indirect sites of one function"""

    def __init__(self, function: Function, cfg: Optional[ControlFlowGraph] = None):
        self.function = function
        self.cfg = cfg or ControlFlowGraph(function)

    def classify(self) -> RegionMap:
        """Build the region map, raising MalformedInput on marker misuse"""
        fid = self.function.id
        region_map = RegionMap(function_id=fid)

        self._check_markers()

        start_blocks = [b.id for b in self.function.blocks
                        if b.starts_region and b.id in self.cfg.reachable]
        for entry in start_blocks:
            region = self._grow_region(entry, set(start_blocks))
            for block_id in region.blocks:
                if block_id in region_map._membership:
                    raise MalformedInput(
                        f"block belongs to regions opened at "
                        f"'{region_map._membership[block_id].entry}' and '{entry}'",
                        fid, block_id,
                    )
                region_map._membership[block_id] = region
            region_map.regions.append(region)

        for block in self.function.blocks:
            if block.ends_region and block.id in self.cfg.reachable \
                    and block.id not in region_map._membership:
                raise MalformedInput("region_end outside any constant-time region", fid, block.id)

        self._classify_indirect_sites(region_map)

        logger.debug(f"{fid}: {len(region_map.regions)} constant-time regions, "
                     f"{len(region_map.indirect_sites)} indirect sites")
        return region_map

    def _check_markers(self) -> None:
        """At most one start and one end per block, start before end"""
        fid = self.function.id
        for block in self.function.blocks:
            starts = block.marker_positions(Opcode.REGION_START)
            ends = block.marker_positions(Opcode.REGION_END)
            if len(starts) > 1:
                raise MalformedInput("nested region_start in a single block", fid, block.id)
            if len(ends) > 1:
                raise MalformedInput("multiple region_end markers in a single block", fid, block.id)
            if starts and ends and ends[0] < starts[0]:
                raise MalformedInput("region_end precedes region_start", fid, block.id)

    def _grow_region(self, entry: str, start_blocks: Set[str]) -> ConstantTimeRegion:
        """Collect the blocks of the region opened at entry"""
        fid = self.function.id
        members = {entry}
        queue = deque([entry])
        while queue:
            block_id = queue.popleft()
            if self.function.block(block_id).ends_region:
                continue
            for succ in self.cfg.succs(block_id):
                if succ == entry or succ in members:
                    continue
                if succ in start_blocks:
                    raise MalformedInput(
                        f"region opened at '{succ}' is nested inside the region opened at '{entry}'",
                        fid, succ,
                    )
                members.add(succ)
                queue.append(succ)

        for block_id in members:
            if block_id == entry:
                continue
            for pred in self.cfg.preds(block_id):
                if pred not in self.cfg.reachable:
                    continue
                if pred not in members:
                    raise MalformedInput(
                        f"block in the region opened at '{entry}' is reachable from "
                        f"'{pred}' outside the region",
                        fid, block_id,
                    )
                if self.function.block(pred).ends_region:
                    raise MalformedInput(
                        f"block in the region opened at '{entry}' is re-entered after "
                        f"region_end in '{pred}'",
                        fid, block_id,
                    )

        exits = tuple(b.id for b in self.function.blocks
                      if b.id in members and (b.ends_region or self.function.is_exit(b.id)))
        if not exits:
            raise MalformedInput(f"region opened at '{entry}' has no exit", fid, entry)
        return ConstantTimeRegion(entry=entry, blocks=frozenset(members), exits=exits)

    def _classify_indirect_sites(self, region_map: RegionMap) -> None:
        fid = self.function.id
        for block, idx, instr in self.function.instructions():
            if not instr.opcode.is_indirect:
                continue
            targets = instr.distinct_targets
            if len(targets) == 1:
                resolution = IndirectResolution.RESOLVED
            elif targets:
                resolution = IndirectResolution.MULTIPLE
            else:
                resolution = IndirectResolution.UNRESOLVED

            site = IndirectSite(
                function_id=fid,
                block_id=block.id,
                instruction_index=idx,
                opcode=instr.opcode,
                target_value=instr.indirect_target,
                targets=targets,
                resolution=resolution,
                in_region=region_map.covers_instruction(block, idx),
            )
            region_map.indirect_sites.append(site)

            if resolution == IndirectResolution.UNRESOLVED:
                kind = "call" if site.is_call else "branch"
                anomaly = Anomaly(
                    kind=AnomalyKind.UNRESOLVED_INDIRECT_TARGET,
                    function_id=fid,
                    detail=f"indirect {kind} through '{site.target_value}' has no static target bound",
                    block_id=block.id,
                    instruction_index=idx,
                )
                region_map.anomalies.append(anomaly)
                logger.warning(f"Unresolved indirect {kind} in {fid}:{block.id}[{idx}]")
