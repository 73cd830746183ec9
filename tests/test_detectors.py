"""Tests for the four guideline detectors"""

from ctengine.detectors import (
    ConditionalScrubDetector, DetectorRegistry, GlobalStorageDetector,
    IndirectBranchDetector, SecretPathDetector,
)
from ctengine.models import RuleId, Severity


class TestDetectorRegistry:
    def test_all_rules_registered(self):
        assert DetectorRegistry.list_rules() == [RuleId.R1, RuleId.R2, RuleId.R3, RuleId.R4]

    def test_get_detectors_in_rule_order(self):
        detectors = DetectorRegistry.get_detectors([RuleId.R4, RuleId.R1])
        assert [type(d) for d in detectors] == [SecretPathDetector, GlobalStorageDetector]

    def test_get_all_detectors(self):
        detectors = DetectorRegistry.get_detectors()
        assert [type(d) for d in detectors] == [
            SecretPathDetector, IndirectBranchDetector,
            ConditionalScrubDetector, GlobalStorageDetector,
        ]
        assert detectors[2].name == RuleId.R3.title


class TestSecretPathDetector:
    def test_branch_between_shaped_and_plain_arm(self, load_fixture, run_rules):
        result = run_rules(load_fixture("scenario_b"), RuleId.R1)
        assert len(result.findings) == 1
        finding = result.findings[0]
        assert finding.function_id == "F"
        assert finding.block_id == "entry"
        assert finding.instruction_index == 1
        assert finding.severity == Severity.CRITICAL
        assert finding.taint_provenance == ("key", "bit")
        assert finding.metadata['join_block'] == "done"
        assert finding.metadata['non_constant_time_arms'] == ["slow"]
        assert finding.metadata['arm_evidence']["fast"] == []

    def test_unknown_condition_without_secret_origin(self, load_fixture, run_rules):
        # G branches on an unannotated parameter: shaped, but never reported itself
        result = run_rules(load_fixture("scenario_b"), RuleId.R1)
        assert result.filter_by_function("G") == []

    def test_both_arms_shaped(self, module_from_yaml, run_rules):
        module = module_from_yaml("""
            functions:
              - id: f
                params: [{value: k, sensitivity: secret}]
                blocks:
                  - id: entry
                    instructions:
                      - {op: branch, inputs: [k], targets: [a, b]}
                  - id: a
                    instructions:
                      - {op: call, callee: memcmp}
                      - {op: jump, targets: [done]}
                  - id: b
                    instructions:
                      - {op: call, callee: strcmp}
                      - {op: jump, targets: [done]}
                  - id: done
                    instructions:
                      - {op: return}
        """)
        assert run_rules(module, RuleId.R1).findings == []

    def test_neither_arm_shaped(self, module_from_yaml, run_rules):
        module = module_from_yaml("""
            functions:
              - id: f
                params: [{value: k, sensitivity: secret}]
                blocks:
                  - id: entry
                    instructions:
                      - {op: branch, inputs: [k], targets: [a, b]}
                  - id: a
                    instructions:
                      - {op: compute, inputs: [k], output: x}
                      - {op: jump, targets: [done]}
                  - id: b
                    instructions:
                      - {op: jump, targets: [done]}
                  - id: done
                    instructions:
                      - {op: return}
        """)
        assert run_rules(module, RuleId.R1).findings == []

    def test_arms_without_join(self, module_from_yaml, run_rules):
        module = module_from_yaml("""
            functions:
              - id: f
                params: [{value: k, sensitivity: secret}]
                blocks:
                  - id: entry
                    instructions:
                      - {op: compute, inputs: [k], output: lt}
                      - {op: branch, inputs: [lt], targets: [slow, fast]}
                  - id: slow
                    instructions:
                      - {op: call, callee: memcmp}
                      - {op: return}
                  - id: fast
                    instructions:
                      - {op: return}
        """)
        result = run_rules(module, RuleId.R1)
        assert len(result.findings) == 1
        assert result.findings[0].metadata['join_block'] is None
        assert result.findings[0].taint_provenance == ("k", "lt")

    def test_unknown_condition_with_secret_origin(self, module_from_yaml, run_rules):
        module = module_from_yaml("""
            functions:
              - id: f
                params: [{value: k, sensitivity: secret}]
                locations:
                  - {id: ctx_key, storage: heap, base: ctx}
                  - {id: ctx_flag, storage: heap, base: ctx}
                blocks:
                  - id: entry
                    instructions:
                      - {op: store, inputs: [k], location: ctx_key}
                      - {op: load, location: ctx_flag, output: flag}
                      - {op: branch, inputs: [flag], targets: [slow, done]}
                  - id: slow
                    instructions:
                      - {op: call, callee: bcmp}
                      - {op: jump, targets: [done]}
                  - id: done
                    instructions:
                      - {op: return}
        """)
        result = run_rules(module, RuleId.R1)
        assert len(result.findings) == 1
        finding = result.findings[0]
        assert finding.metadata['condition_label'] == "Unknown"
        assert finding.taint_provenance == ("k", "flag")
        assert finding.instruction_index == 2

    def test_configured_routine_list(self, module_from_yaml, run_rules):
        module = module_from_yaml("""
            functions:
              - id: f
                params: [{value: k, sensitivity: secret}]
                blocks:
                  - id: entry
                    instructions:
                      - {op: branch, inputs: [k], targets: [a, done]}
                  - id: a
                    instructions:
                      - {op: call, callee: bn_cmp}
                      - {op: jump, targets: [done]}
                  - id: done
                    instructions:
                      - {op: return}
        """)
        assert run_rules(module, RuleId.R1).findings == []
        result = run_rules(module, RuleId.R1, non_constant_time_functions=["bn_cmp"])
        assert len(result.findings) == 1
        assert result.findings[0].metadata['non_constant_time_arms'] == ["a"]

    def test_public_branch_not_reported(self, load_fixture, run_rules):
        assert run_rules(load_fixture("scenario_c"), RuleId.R1).findings == []


class TestIndirectBranchDetector:
    def test_dispatch_in_region(self, load_fixture, run_rules):
        result = run_rules(load_fixture("region_dispatch"), RuleId.R2)
        assert len(result.findings) == 1
        finding = result.findings[0]
        assert finding.block_id == "ct"
        assert finding.instruction_index == 2
        assert finding.severity == Severity.HIGH
        assert finding.taint_provenance == ("handler",)
        assert finding.metadata['resolution'] == "multiple"
        assert finding.metadata['targets'] == ["h1", "h2"]
        assert finding.metadata['target_label'] == "Public"
        assert finding.metadata['region_entry'] == "ct"

    def test_secret_target_uses_provenance(self, module_from_yaml, run_rules):
        module = module_from_yaml("""
            functions:
              - id: f
                params: [{value: k, sensitivity: secret}]
                blocks:
                  - id: entry
                    instructions:
                      - {op: region_start}
                      - {op: compute, inputs: [k], output: fp}
                      - {op: indirect_call, inputs: [fp], targets: [mul_a, mul_b]}
                      - {op: region_end}
                      - {op: return}
        """)
        result = run_rules(module, RuleId.R2)
        assert result.findings[0].taint_provenance == ("k", "fp")
        assert "call" in result.findings[0].description

    def test_resolved_site_in_region(self, module_from_yaml, run_rules):
        module = module_from_yaml("""
            functions:
              - id: f
                params: [fp]
                blocks:
                  - id: entry
                    instructions:
                      - {op: region_start}
                      - {op: indirect_call, inputs: [fp], targets: [mul]}
                      - {op: region_end}
                      - {op: return}
        """)
        assert run_rules(module, RuleId.R2).findings == []

    def test_unresolved_site_in_region(self, module_from_yaml, run_rules):
        module = module_from_yaml("""
            functions:
              - id: f
                params: [fp]
                blocks:
                  - id: entry
                    instructions:
                      - {op: region_start}
                      - {op: indirect_call, inputs: [fp]}
                      - {op: region_end}
                      - {op: return}
        """)
        result = run_rules(module, RuleId.R2)
        assert len(result.findings) == 1
        assert result.findings[0].metadata['resolution'] == "unresolved"
        assert len(result.anomalies) == 1

    def test_site_outside_region(self, module_from_yaml, run_rules):
        module = module_from_yaml("""
            functions:
              - id: f
                params: [fp]
                blocks:
                  - id: entry
                    instructions:
                      - {op: indirect_call, inputs: [fp]}
                      - {op: return}
        """)
        result = run_rules(module, RuleId.R2)
        assert result.findings == []
        # Still recorded as an anomaly
        assert [a.kind.value for a in result.anomalies] == ["UnresolvedIndirectTarget"]

    def test_site_before_start_marker(self, module_from_yaml, run_rules):
        module = module_from_yaml("""
            functions:
              - id: f
                params: [fp]
                blocks:
                  - id: entry
                    instructions:
                      - {op: indirect_call, inputs: [fp], targets: [mul_a, mul_b]}
                      - {op: region_start}
                      - {op: region_end}
                      - {op: indirect_call, inputs: [fp], targets: [mul_a, mul_b]}
                      - {op: return}
        """)
        assert run_rules(module, RuleId.R2).findings == []


class TestConditionalScrubDetector:
    def test_early_return_skips_scrub(self, load_fixture, run_rules):
        result = run_rules(load_fixture("scenario_c"), RuleId.R3)
        assert len(result.findings) == 1
        finding = result.findings[0]
        assert finding.block_id == "work"
        assert finding.instruction_index == 0
        assert finding.severity == Severity.CRITICAL
        assert finding.taint_provenance == ("key", "expanded", "too_short")
        assert finding.metadata['definition_block'] == "entry"
        assert finding.metadata['location'] == "buf"
        bypass = finding.metadata['bypass_branches']
        assert [b['block_id'] for b in bypass] == ["entry"]
        assert bypass[0]['condition'] == "too_short"
        assert bypass[0]['condition_label'] == "Public"
        assert bypass[0]['instruction_index'] == 3
        assert finding.metadata['escaping_values'] == ["expanded"]

    def test_unconditional_scrub(self, module_from_yaml, run_rules):
        module = module_from_yaml("""
            functions:
              - id: f
                params: [{value: key, sensitivity: secret}, {value: n, sensitivity: public}]
                blocks:
                  - id: entry
                    instructions:
                      - {op: compute, inputs: [key], output: ks}
                      - {op: branch, inputs: [n], targets: [a, b]}
                  - id: a
                    instructions:
                      - {op: jump, targets: [wipe]}
                  - id: b
                    instructions:
                      - {op: jump, targets: [wipe]}
                  - id: wipe
                    instructions:
                      - {op: scrub, inputs: [ks]}
                      - {op: return}
        """)
        assert run_rules(module, RuleId.R3).findings == []

    def test_scrub_in_defining_block(self, module_from_yaml, run_rules):
        module = module_from_yaml("""
            functions:
              - id: f
                params: [{value: key, sensitivity: secret}, {value: n, sensitivity: public}]
                blocks:
                  - id: entry
                    instructions:
                      - {op: compute, inputs: [key], output: ks}
                      - {op: scrub, inputs: [ks]}
                      - {op: branch, inputs: [n], targets: [a, b]}
                  - id: a
                    instructions: [{op: return}]
                  - id: b
                    instructions: [{op: return}]
        """)
        assert run_rules(module, RuleId.R3).findings == []

    def test_parameter_scrub_defined_at_entry(self, module_from_yaml, run_rules):
        module = module_from_yaml("""
            functions:
              - id: f
                params: [{value: key, sensitivity: secret}, {value: ok, sensitivity: public}]
                blocks:
                  - id: entry
                    instructions:
                      - {op: branch, inputs: [ok], targets: [wipe, bail]}
                  - id: wipe
                    instructions:
                      - {op: scrub, inputs: [key]}
                      - {op: return}
                  - id: bail
                    instructions:
                      - {op: return}
        """)
        result = run_rules(module, RuleId.R3)
        assert len(result.findings) == 1
        assert result.findings[0].metadata['definition_block'] == "entry"
        assert result.findings[0].taint_provenance == ("key", "ok")

    def test_public_scrub_ignored(self, module_from_yaml, run_rules):
        module = module_from_yaml("""
            functions:
              - id: f
                params: [{value: n, sensitivity: public}]
                blocks:
                  - id: entry
                    instructions:
                      - {op: branch, inputs: [n], targets: [wipe, bail]}
                  - id: wipe
                    instructions:
                      - {op: scrub, inputs: [n]}
                      - {op: return}
                  - id: bail
                    instructions:
                      - {op: return}
        """)
        assert run_rules(module, RuleId.R3).findings == []

    def test_escaping_derived_values(self, module_from_yaml, run_rules):
        module = module_from_yaml("""
            functions:
              - id: f
                params: [{value: key, sensitivity: secret}, {value: n, sensitivity: public}]
                blocks:
                  - id: entry
                    instructions:
                      - {op: compute, inputs: [key], output: ks}
                      - {op: compute, inputs: [ks], output: tag}
                      - {op: branch, inputs: [n], targets: [wipe, bail]}
                  - id: wipe
                    instructions:
                      - {op: scrub, inputs: [ks]}
                      - {op: return}
                  - id: bail
                    instructions:
                      - {op: return}
        """)
        finding = run_rules(module, RuleId.R3).findings[0]
        assert finding.metadata['escaping_values'] == ["ks", "tag"]


class TestGlobalStorageDetector:
    def test_secret_cached_in_global(self, load_fixture, run_rules):
        result = run_rules(load_fixture("scenario_d"), RuleId.R4)
        assert len(result.findings) == 1
        finding = result.findings[0]
        assert finding.block_id == "entry"
        assert finding.instruction_index == 0
        assert finding.severity == Severity.HIGH
        assert finding.taint_provenance == ("key",)
        assert finding.metadata['location'] == "g_key_cache"

    def test_non_global_storage_ignored(self, module_from_yaml, run_rules):
        module = module_from_yaml("""
            functions:
              - id: f
                params: [{value: key, sensitivity: secret}]
                locations:
                  - {id: stack_buf, storage: local}
                  - {id: arena, storage: heap}
                blocks:
                  - id: entry
                    instructions:
                      - {op: store, inputs: [key], location: stack_buf}
                      - {op: store, inputs: [key], location: arena}
                      - {op: return}
        """)
        assert run_rules(module, RuleId.R4).findings == []

    def test_public_and_unknown_values_ignored(self, module_from_yaml, run_rules):
        module = module_from_yaml("""
            locations: [{id: g_counter, storage: global, base: g_counter}]
            functions:
              - id: f
                params: [{value: n, sensitivity: public}, u]
                blocks:
                  - id: entry
                    instructions:
                      - {op: store, inputs: [n], location: g_counter}
                      - {op: store, inputs: [u], location: g_counter}
                      - {op: return}
        """)
        assert run_rules(module, RuleId.R4).findings == []

    def test_store_in_unreachable_block(self, module_from_yaml, run_rules):
        module = module_from_yaml("""
            locations: [{id: g_ctx, storage: global, base: g_ctx}]
            functions:
              - id: f
                params: [{value: key, sensitivity: secret}]
                blocks:
                  - id: entry
                    instructions:
                      - {op: return}
                  - id: dead
                    instructions:
                      - {op: store, inputs: [key], location: g_ctx}
                      - {op: return}
        """)
        result = run_rules(module, RuleId.R4)
        assert [f.block_id for f in result.findings] == ["dead"]
