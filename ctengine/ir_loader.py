"""
IR loader - parses a serialized function graph into IR objects

The serialized form is a YAML (or JSON, which YAML accepts) mapping:

    module: aes_gcm
    locations:
      - {id: g_ctx, storage: global, base: g_ctx}
    functions:
      - id: seal
        params:
          - {value: key, sensitivity: secret}
        returns: public
        locations:
          - {id: tmp, storage: local, base: tmp}
        blocks:
          - id: entry
            instructions:
              - {op: load, location: tmp, output: t0}
              - {op: compute, inputs: [key, t0], output: t1}
              - {op: return, inputs: [t1]}

Any structural problem raises MalformedInput before analysis begins.
"""

from __future__ import annotations

import yaml
from pathlib import Path
from typing import Any, Dict, List, Optional, Union
import logging

from .errors import MalformedInput
from .ir import (
    BasicBlock, Function, Instruction, MemoryLocation, Module, Opcode,
    Parameter, Sensitivity, StorageClass, validate_module,
)

logger = logging.getLogger(__name__)


class IRLoader:
    """Loads serialized modules into validated IR"""

    def load_file(self, filepath: Union[str, Path]) -> Module:
        """Load a module from a YAML or JSON file"""
        filepath = Path(filepath)
        try:
            with open(filepath, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise MalformedInput(f"cannot parse {filepath.name}: {e}") from e
        except UnicodeDecodeError as e:
            raise MalformedInput(f"{filepath.name} is not valid UTF-8: {e}") from e
        except OSError as e:
            raise MalformedInput(f"cannot read {filepath}: {e}") from e

        module = self.load_dict(data, default_name=filepath.stem)
        logger.info(f"Loaded module {module.name} with {len(module.functions)} functions from {filepath.name}")
        return module

    def load_string(self, text: str) -> Module:
        """Load a module from YAML/JSON text"""
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise MalformedInput(f"cannot parse module text: {e}") from e
        return self.load_dict(data)

    def load_dict(self, data: Any, default_name: str = "module") -> Module:
        """Build and validate a module from already-decoded data"""
        if not isinstance(data, dict):
            raise MalformedInput("module document must be a mapping")

        raw_functions = data.get('functions') or []
        if not isinstance(raw_functions, list):
            raise MalformedInput("'functions' must be a list")

        module = Module(
            name=str(data.get('module') or default_name),
            functions=tuple(self._parse_function(raw) for raw in raw_functions),
            locations=tuple(self._parse_locations(data.get('locations'), "")),
        )
        validate_module(module)
        return module

    def _parse_function(self, raw: Any) -> Function:
        """Parse a single function"""
        if not isinstance(raw, dict) or not raw.get('id'):
            raise MalformedInput("function entry must be a mapping with an 'id'")
        fid = str(raw['id'])

        raw_params = raw.get('params')
        if raw_params is None:
            raw_params = []
        if not isinstance(raw_params, list):
            raise MalformedInput("'params' must be a list", fid)

        params = []
        for raw_param in raw_params:
            if isinstance(raw_param, str):
                params.append(Parameter(raw_param))
                continue
            if not isinstance(raw_param, dict) or 'value' not in raw_param:
                raise MalformedInput("parameter must name a 'value'", fid)
            params.append(Parameter(
                value=str(raw_param['value']),
                sensitivity=self._parse_sensitivity(raw_param.get('sensitivity', 'unknown'), fid),
            ))

        returns = raw.get('returns')
        return_sensitivity = self._parse_sensitivity(returns, fid) if returns is not None else None

        raw_blocks = raw.get('blocks') or []
        if not isinstance(raw_blocks, list):
            raise MalformedInput("'blocks' must be a list", fid)

        return Function(
            id=fid,
            blocks=tuple(self._parse_block(b, fid) for b in raw_blocks),
            params=tuple(params),
            return_sensitivity=return_sensitivity,
            locations=tuple(self._parse_locations(raw.get('locations'), fid)),
        )

    def _parse_block(self, raw: Any, fid: str) -> BasicBlock:
        """Parse a basic block"""
        if not isinstance(raw, dict) or raw.get('id') is None:
            raise MalformedInput("block entry must be a mapping with an 'id'", fid)
        bid = str(raw['id'])
        raw_instrs = raw.get('instructions') or []
        if not isinstance(raw_instrs, list):
            raise MalformedInput("'instructions' must be a list", fid, bid)
        return BasicBlock(
            id=bid,
            instructions=tuple(self._parse_instruction(i, fid, bid) for i in raw_instrs),
        )

    def _parse_instruction(self, raw: Any, fid: str, bid: str) -> Instruction:
        """Parse a single instruction"""
        if not isinstance(raw, dict) or 'op' not in raw:
            raise MalformedInput("instruction must be a mapping with an 'op'", fid, bid)
        try:
            opcode = Opcode(str(raw['op']).lower())
        except ValueError:
            raise MalformedInput(f"unknown opcode '{raw['op']}'", fid, bid) from None

        return Instruction(
            opcode=opcode,
            inputs=tuple(self._string_list(raw.get('inputs'), 'inputs', fid, bid)),
            output=self._optional_str(raw.get('output')),
            targets=tuple(self._string_list(raw.get('targets'), 'targets', fid, bid)),
            location=self._optional_str(raw.get('location')),
            callee=self._optional_str(raw.get('callee')),
        )

    def _parse_locations(self, raw: Any, fid: str) -> List[MemoryLocation]:
        """Parse memory location declarations"""
        if raw is None:
            return []
        if not isinstance(raw, list):
            raise MalformedInput("'locations' must be a list", fid)

        locations = []
        for entry in raw:
            if not isinstance(entry, dict) or not entry.get('id'):
                raise MalformedInput("location entry must be a mapping with an 'id'", fid)
            storage_str = str(entry.get('storage', 'heap')).lower()
            try:
                storage = StorageClass(storage_str)
            except ValueError:
                raise MalformedInput(f"unknown storage class '{storage_str}'", fid) from None
            locations.append(MemoryLocation(
                id=str(entry['id']),
                storage_class=storage,
                base=self._optional_str(entry.get('base')),
                secret=bool(entry.get('secret', False)),
            ))
        return locations

    def _parse_sensitivity(self, raw: Any, fid: str) -> Sensitivity:
        try:
            return Sensitivity(str(raw).lower())
        except ValueError:
            raise MalformedInput(f"unknown sensitivity '{raw}'", fid) from None

    def _string_list(self, raw: Any, name: str, fid: str, bid: str) -> List[str]:
        if raw is None:
            return []
        if isinstance(raw, str):
            return [raw]
        if not isinstance(raw, list):
            raise MalformedInput(f"'{name}' must be a list", fid, bid)
        return [str(item) for item in raw]

    def _optional_str(self, raw: Any) -> Optional[str]:
        return None if raw is None else str(raw)


def load_module(source: Union[str, Path, Dict[str, Any]]) -> Module:
    """Convenience function: load a module from a path or a decoded mapping"""
    loader = IRLoader()
    if isinstance(source, dict):
        return loader.load_dict(source)
    return loader.load_file(source)
