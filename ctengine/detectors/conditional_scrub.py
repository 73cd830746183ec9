"""
Rule 3 - conditionally-executed scrubbing of secret-tainted state

A scrub only protects a secret when every path from the secret's
definition to a function exit passes through it. A conditional branch
that lets control reach an exit around the scrub leaves the value live.
"""

from __future__ import annotations

from typing import List, Set
import logging

from ..ir import Opcode
from ..models import Finding, RuleId
from .base import Detector, DetectorContext, DetectorRegistry

logger = logging.getLogger(__name__)


@DetectorRegistry.register(RuleId.R3)
class ConditionalScrubDetector(Detector):
    """One finding per scrub that some path from the definition can skip"""

    def detect(self, ctx: DetectorContext) -> List[Finding]:
        cfg = ctx.cfg
        sites = ctx.function.value_sites()
        exits = [e for e in cfg.exits if e in cfg.reachable]
        findings = []

        for block, idx, instr in ctx.function.instructions():
            if instr.opcode != Opcode.SCRUB or block.id not in cfg.reachable:
                continue
            value_id = instr.inputs[0]
            scrubbed = ctx.taint.taint(value_id)
            if not scrubbed.is_tainted or not scrubbed.has_secret_origin:
                continue

            site = sites.get(value_id)
            def_block = cfg.entry if site is None or site.is_parameter else site.block_id
            if def_block == block.id or def_block not in cfg.reachable:
                continue

            avoid = {block.id}
            escaping = cfg.reachable_from(def_block, avoid=avoid)
            if not any(e in escaping for e in exits):
                continue

            bypasses = self._bypass_branches(ctx, escaping, block.id, exits)
            chain = list(scrubbed.provenance)
            bypass_meta = []
            for bypass_block in bypasses:
                term = ctx.function.block(bypass_block).terminator
                decider = term.condition or term.indirect_target
                bypass_meta.append({
                    'block_id': bypass_block,
                    'instruction_index': len(ctx.function.block(bypass_block).instructions) - 1,
                    'condition': decider,
                    'condition_label': str(ctx.taint.label(decider)),
                })
            if bypass_meta and bypass_meta[0]['condition'] is not None:
                chain.append(bypass_meta[0]['condition'])

            escaping_values = self._escaping_values(ctx, value_id, escaping)
            where = f" at '{bypasses[0]}'" if bypasses else ""
            findings.append(ctx.make_finding(
                RuleId.R3, block.id, idx, chain,
                f"scrub of {scrubbed.label} value '{value_id}' can be skipped{where}",
                metadata={
                    'scrubbed_value': value_id,
                    'location': instr.location,
                    'definition_block': def_block,
                    'bypass_branches': bypass_meta,
                    'escaping_values': escaping_values,
                },
            ))
        return findings

    def _bypass_branches(self, ctx: DetectorContext, escaping: Set[str],
                         scrub_block: str, exits: List[str]) -> List[str]:
        """
        Multi-successor blocks on a path to an exit that avoids the scrub,
        with one successor still leading to the scrub and another escaping.
        """
        cfg = ctx.cfg
        reaches_scrub = cfg.reaching([scrub_block])
        reaches_exit_around = cfg.reaching(exits, avoid={scrub_block})

        result = []
        for block in ctx.function.blocks:
            if block.id not in escaping:
                continue
            succs = cfg.succs(block.id)
            if len(succs) < 2:
                continue
            to_scrub = [s for s in succs if s in reaches_scrub]
            around = [s for s in succs if s in reaches_exit_around]
            if any(s1 != s2 for s1 in to_scrub for s2 in around):
                result.append(block.id)
        return result

    def _escaping_values(self, ctx: DetectorContext, value_id: str,
                         escaping: Set[str]) -> List[str]:
        """The scrubbed value plus Secret values derived from it on the escaping paths"""
        values = [value_id]
        for block, _, instr in ctx.function.instructions():
            if block.id not in escaping or instr.output is None:
                continue
            taint = ctx.taint.taint(instr.output)
            if taint.is_secret and value_id in taint.provenance and instr.output != value_id:
                values.append(instr.output)
        return values
