"""
Rule 4 - secret data held in global/static storage
"""

from __future__ import annotations

from typing import List

from ..ir import Opcode, StorageClass
from ..models import Finding, RuleId
from .base import Detector, DetectorContext, DetectorRegistry


@DetectorRegistry.register(RuleId.R4)
class GlobalStorageDetector(Detector):
    """Every store of a Secret value to a Global location, independent of control flow"""

    def detect(self, ctx: DetectorContext) -> List[Finding]:
        locations = ctx.module.locations_for(ctx.function)
        findings = []
        for block, idx, instr in ctx.function.instructions():
            if instr.opcode != Opcode.STORE:
                continue
            location = locations[instr.location]
            if location.storage_class != StorageClass.GLOBAL:
                continue
            stored = ctx.taint.taint(instr.inputs[0])
            if not stored.is_secret or not stored.has_secret_origin:
                continue
            findings.append(ctx.make_finding(
                RuleId.R4, block.id, idx, stored.provenance,
                f"Secret value '{instr.inputs[0]}' stored to global location '{location.id}'",
                metadata={'location': location.id},
            ))
        return findings
