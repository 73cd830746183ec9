"""Tests for IR loading and structural validation"""

import json
import pytest

from ctengine.errors import MalformedInput
from ctengine.ir import Opcode, Sensitivity, StorageClass
from ctengine.ir_loader import IRLoader, load_module


class TestLoading:
    def test_load_fixture(self, load_fixture):
        module = load_fixture("scenario_a")
        assert module.name == "scenario_a"
        f = module.function("F")
        assert f.params[0].value == "key"
        assert f.params[0].sensitivity == Sensitivity.SECRET
        assert f.return_sensitivity == Sensitivity.SECRET
        assert f.entry.id == "entry"
        assert [i.opcode for i in f.entry] == [Opcode.COMPUTE, Opcode.COMPUTE, Opcode.RETURN]

    def test_load_json_text(self):
        data = {
            "module": "json_mod",
            "functions": [{
                "id": "f",
                "params": ["x"],
                "blocks": [{"id": "b0", "instructions": [{"op": "return", "inputs": ["x"]}]}],
            }],
        }
        module = IRLoader().load_string(json.dumps(data))
        assert module.name == "json_mod"
        # Unannotated parameters are Unknown
        assert module.function("f").params[0].sensitivity == Sensitivity.UNKNOWN

    def test_module_name_defaults_to_file_stem(self, tmp_path):
        path = tmp_path / "chacha.yaml"
        path.write_text("functions:\n  - id: f\n    blocks:\n      - id: b\n        instructions:\n          - {op: return}\n")
        assert load_module(path).name == "chacha"

    def test_load_module_from_dict(self):
        module = load_module({"functions": [
            {"id": "f", "blocks": [{"id": "b", "instructions": [{"op": "return"}]}]},
        ]})
        assert module.has_function("f")

    def test_locations(self, module_from_yaml):
        module = module_from_yaml("""
            locations:
              - {id: g, storage: global, base: g}
            functions:
              - id: f
                locations:
                  - {id: tmp}
                  - {id: sbox, storage: heap, secret: true}
                blocks:
                  - id: b
                    instructions:
                      - {op: return}
        """)
        f = module.function("f")
        visible = module.locations_for(f)
        assert visible["g"].storage_class == StorageClass.GLOBAL
        assert visible["tmp"].storage_class == StorageClass.HEAP
        assert visible["tmp"].base is None
        assert visible["sbox"].secret is True

    def test_fallthrough_successor(self, module_from_yaml):
        module = module_from_yaml("""
            functions:
              - id: f
                blocks:
                  - id: a
                    instructions:
                      - {op: fallthrough}
                  - id: b
                    instructions:
                      - {op: return}
        """)
        assert module.function("f").successors("a") == ("b",)


class TestMalformedInput:
    def _load(self, module_from_yaml, blocks, params="[]", extra=""):
        return module_from_yaml(f"""
            {extra}
            functions:
              - id: f
                params: {params}
                blocks: {blocks}
        """)

    def test_invalid_yaml(self):
        with pytest.raises(MalformedInput):
            IRLoader().load_string("functions: [unclosed")

    def test_document_not_a_mapping(self):
        with pytest.raises(MalformedInput):
            IRLoader().load_string("- just\n- a list\n")

    def test_invalid_yaml_file(self, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("functions: {id: [")
        with pytest.raises(MalformedInput):
            IRLoader().load_file(path)

    def test_unknown_opcode(self, module_from_yaml):
        with pytest.raises(MalformedInput, match="unknown opcode"):
            self._load(module_from_yaml, '[{id: b, instructions: [{op: lfence}, {op: return}]}]')

    def test_function_without_blocks(self, module_from_yaml):
        with pytest.raises(MalformedInput, match="no blocks"):
            self._load(module_from_yaml, '[]')

    def test_missing_terminator(self, module_from_yaml):
        with pytest.raises(MalformedInput, match="terminator"):
            self._load(module_from_yaml, '[{id: b, instructions: [{op: compute, output: t}]}]')

    def test_terminator_not_last(self, module_from_yaml):
        with pytest.raises(MalformedInput, match="not the last"):
            self._load(module_from_yaml,
                       '[{id: b, instructions: [{op: return}, {op: compute, output: t}, {op: return}]}]')

    def test_empty_block(self, module_from_yaml):
        with pytest.raises(MalformedInput, match="empty block"):
            self._load(module_from_yaml, '[{id: b, instructions: []}]')

    def test_undefined_value(self, module_from_yaml):
        with pytest.raises(MalformedInput, match="undefined value"):
            self._load(module_from_yaml,
                       '[{id: b, instructions: [{op: compute, inputs: [ghost], output: t}, {op: return}]}]')

    def test_self_referential_value(self, module_from_yaml):
        with pytest.raises(MalformedInput, match="own definition"):
            self._load(module_from_yaml,
                       '[{id: b, instructions: [{op: compute, inputs: [t], output: t}, {op: return}]}]')

    def test_mutually_dependent_values(self, module_from_yaml):
        with pytest.raises(MalformedInput, match="before its definition"):
            self._load(module_from_yaml,
                       '[{id: b, instructions: [{op: compute, inputs: [b], output: a}, '
                       '{op: compute, inputs: [a], output: b}, {op: return}]}]')

    def test_use_not_dominated_by_definition(self, module_from_yaml):
        with pytest.raises(MalformedInput, match="does not dominate") as exc:
            module_from_yaml("""
                functions:
                  - id: f
                    params: [c]
                    blocks:
                      - id: entry
                        instructions:
                          - {op: branch, inputs: [c], targets: [left, join]}
                      - id: left
                        instructions:
                          - {op: compute, inputs: [c], output: t}
                          - {op: jump, targets: [join]}
                      - id: join
                        instructions:
                          - {op: return, inputs: [t]}
            """)
        assert exc.value.block_id == "join"

    def test_phi_may_use_later_definition(self, module_from_yaml):
        module = module_from_yaml("""
            functions:
              - id: f
                params: [c]
                blocks:
                  - id: entry
                    instructions:
                      - {op: compute, inputs: [c], output: i0}
                      - {op: jump, targets: [head]}
                  - id: head
                    instructions:
                      - {op: phi, inputs: [i0, i1], output: i}
                      - {op: branch, inputs: [c], targets: [body, out]}
                  - id: body
                    instructions:
                      - {op: compute, inputs: [i], output: i1}
                      - {op: jump, targets: [head]}
                  - id: out
                    instructions:
                      - {op: return, inputs: [i]}
        """)
        assert len(module.function("f").blocks) == 4

    def test_params_must_be_a_list(self, module_from_yaml):
        for params in ("5", "key"):
            with pytest.raises(MalformedInput, match="'params' must be a list"):
                self._load(module_from_yaml, '[{id: b, instructions: [{op: return}]}]',
                           params=params)

    def test_file_not_utf8(self, tmp_path):
        path = tmp_path / "binary.yaml"
        path.write_bytes(b"module: \xff\xfe\n")
        with pytest.raises(MalformedInput, match="UTF-8"):
            IRLoader().load_file(path)

    def test_unreadable_path(self, tmp_path):
        with pytest.raises(MalformedInput, match="cannot read"):
            IRLoader().load_file(tmp_path)

    def test_value_defined_twice(self, module_from_yaml):
        with pytest.raises(MalformedInput, match="more than once"):
            self._load(module_from_yaml,
                       '[{id: b, instructions: [{op: compute, inputs: [x], output: x}, {op: return}]}]',
                       params='[x]')

    def test_duplicate_block(self, module_from_yaml):
        with pytest.raises(MalformedInput, match="duplicate block"):
            self._load(module_from_yaml,
                       '[{id: b, instructions: [{op: return}]}, {id: b, instructions: [{op: return}]}]')

    def test_branch_to_unknown_block(self, module_from_yaml):
        with pytest.raises(MalformedInput, match="unknown block"):
            self._load(module_from_yaml,
                       '[{id: b, instructions: [{op: branch, inputs: [c], targets: [b, nowhere]}]}]',
                       params='[c]')

    def test_branch_needs_two_targets(self, module_from_yaml):
        with pytest.raises(MalformedInput, match="two targets"):
            self._load(module_from_yaml,
                       '[{id: b, instructions: [{op: branch, inputs: [c], targets: [b]}]}]',
                       params='[c]')

    def test_branch_needs_condition(self, module_from_yaml):
        with pytest.raises(MalformedInput, match="requires an input"):
            self._load(module_from_yaml,
                       '[{id: a, instructions: [{op: branch, targets: [a, b]}]}, '
                       '{id: b, instructions: [{op: return}]}]')

    def test_fallthrough_from_last_block(self, module_from_yaml):
        with pytest.raises(MalformedInput, match="fallthrough"):
            self._load(module_from_yaml, '[{id: b, instructions: [{op: fallthrough}]}]')

    def test_unknown_location(self, module_from_yaml):
        with pytest.raises(MalformedInput, match="unknown memory location"):
            self._load(module_from_yaml,
                       '[{id: b, instructions: [{op: store, inputs: [x], location: nowhere}, {op: return}]}]',
                       params='[x]')

    def test_store_without_location(self, module_from_yaml):
        with pytest.raises(MalformedInput, match="memory location"):
            self._load(module_from_yaml,
                       '[{id: b, instructions: [{op: store, inputs: [x]}, {op: return}]}]',
                       params='[x]')

    def test_declassify_requires_output(self, module_from_yaml):
        with pytest.raises(MalformedInput, match="output"):
            self._load(module_from_yaml,
                       '[{id: b, instructions: [{op: declassify, inputs: [x]}, {op: return}]}]',
                       params='[x]')

    def test_call_requires_callee(self, module_from_yaml):
        with pytest.raises(MalformedInput, match="callee"):
            self._load(module_from_yaml, '[{id: b, instructions: [{op: call}, {op: return}]}]')

    def test_unknown_sensitivity(self, module_from_yaml):
        with pytest.raises(MalformedInput, match="sensitivity"):
            self._load(module_from_yaml, '[{id: b, instructions: [{op: return}]}]',
                       params='[{value: x, sensitivity: classified}]')

    def test_unknown_storage_class(self, module_from_yaml):
        with pytest.raises(MalformedInput, match="storage class"):
            self._load(module_from_yaml, '[{id: b, instructions: [{op: return}]}]',
                       extra='locations: [{id: g, storage: rom}]')

    def test_duplicate_function(self, module_from_yaml):
        with pytest.raises(MalformedInput, match="duplicate function"):
            module_from_yaml("""
                functions:
                  - id: f
                    blocks: [{id: b, instructions: [{op: return}]}]
                  - id: f
                    blocks: [{id: b, instructions: [{op: return}]}]
            """)

    def test_local_shadows_module_location(self, module_from_yaml):
        with pytest.raises(MalformedInput, match="shadows"):
            module_from_yaml("""
                locations: [{id: g, storage: global}]
                functions:
                  - id: f
                    locations: [{id: g, storage: local}]
                    blocks: [{id: b, instructions: [{op: return}]}]
            """)

    def test_error_names_function_and_block(self, module_from_yaml):
        with pytest.raises(MalformedInput) as exc_info:
            self._load(module_from_yaml, '[{id: b7, instructions: [{op: compute, output: t}]}]')
        assert exc_info.value.function_id == "f"
        assert exc_info.value.block_id == "b7"
        assert "[f:b7]" in str(exc_info.value)
