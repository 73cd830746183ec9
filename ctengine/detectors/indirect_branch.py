"""
Rule 2 - indirect branches and calls inside constant-time regions

The rule is structural: a dynamic indirect site inside a region is
reported whatever the taint of its target.
"""

from __future__ import annotations

from typing import List

from ..models import Finding, RuleId
from .base import Detector, DetectorContext, DetectorRegistry


@DetectorRegistry.register(RuleId.R2)
class IndirectBranchDetector(Detector):

    def detect(self, ctx: DetectorContext) -> List[Finding]:
        findings = []
        for site in ctx.regions.indirect_sites:
            if not site.in_region or not site.is_dynamic:
                continue
            target = ctx.taint.taint(site.target_value)
            chain = target.provenance or (site.target_value,)
            kind = "call" if site.is_call else "branch"
            region = ctx.regions.region_of(site.block_id)
            findings.append(ctx.make_finding(
                RuleId.R2, site.block_id, site.instruction_index, chain,
                f"indirect {kind} through '{site.target_value}' inside the "
                f"constant-time region opened at '{region.entry}'",
                metadata={
                    'resolution': site.resolution.value,
                    'targets': list(site.targets),
                    'target_label': str(target.label),
                    'region_entry': region.entry,
                },
            ))
        return findings
