"""
Rule 1 - secret-dependent choice between constant-time and
non-constant-time code paths
"""

from __future__ import annotations

from typing import Dict, List
import logging

from ..cfg import VIRTUAL_EXIT
from ..ir import Opcode
from ..models import Finding, RuleId
from .base import Detector, DetectorContext, DetectorRegistry

logger = logging.getLogger(__name__)


@DetectorRegistry.register(RuleId.R1)
class SecretPathDetector(Detector):
    """
    Flags conditional branches on Secret/Unknown conditions whose arms
    differ in shape: at least one arm contains a non-constant-time-shaped
    operation and at least one does not.

    An arm is every block reachable from a successor before reaching the
    branch's immediate post-dominator (or coming back to the branch).
    """

    def detect(self, ctx: DetectorContext) -> List[Finding]:
        findings = []
        inspector = None

        for block in ctx.function.blocks:
            if block.id not in ctx.cfg.reachable:
                continue
            term = block.terminator
            if term.opcode != Opcode.BRANCH:
                continue
            cond = ctx.taint.taint(term.condition)
            if not cond.is_tainted or not cond.has_secret_origin:
                continue

            successors = ctx.cfg.succs(block.id)
            if len(successors) < 2:
                continue

            inspector = inspector or ctx.shape_inspector()
            join = ctx.post_dominators.immediate(block.id)
            avoid = {block.id}
            if join is not None and join != VIRTUAL_EXIT:
                avoid.add(join)

            arms: Dict[str, List[str]] = {}
            for succ in successors:
                arm_blocks = ctx.cfg.reachable_from(succ, avoid=avoid)
                arms[succ] = [str(e) for e in inspector.evidence(arm_blocks)]

            shaped = [s for s, ev in arms.items() if ev]
            if not shaped or len(shaped) == len(arms):
                continue

            findings.append(ctx.make_finding(
                RuleId.R1, block.id, len(block.instructions) - 1,
                cond.provenance,
                f"branch on {cond.label} value '{term.condition}' selects between "
                f"constant-time and non-constant-time paths",
                metadata={
                    'condition': term.condition,
                    'condition_label': str(cond.label),
                    'join_block': join if join != VIRTUAL_EXIT else None,
                    'non_constant_time_arms': shaped,
                    'arm_evidence': arms,
                },
            ))
        return findings
