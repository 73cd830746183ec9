"""
Analyzer configuration - loads YAML settings into an AnalyzerConfig

Example file:

    enabled_rules: [R1, R2, R3, R4]
    max_call_depth: 32
    max_workers: 4
    timeout_seconds: 30
    non_constant_time_functions: [memcmp, strcmp]
    unresolved_indirect_call_is_non_constant_time: true
    min_severity: info
"""

import yaml
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Union
import logging

from .errors import ConfigurationError
from .models import RuleId, Severity

logger = logging.getLogger(__name__)

DEFAULT_NON_CONSTANT_TIME_FUNCTIONS = ('memcmp', 'strcmp', 'strncmp', 'strlen', 'bcmp')


@dataclass(frozen=True)
class AnalyzerConfig:
    """Settings for one analyzer instance"""
    enabled_rules: List[RuleId] = field(default_factory=lambda: list(RuleId))
    max_call_depth: int = 32
    max_workers: int = 4
    timeout_seconds: Optional[float] = None
    non_constant_time_functions: List[str] = field(
        default_factory=lambda: list(DEFAULT_NON_CONSTANT_TIME_FUNCTIONS)
    )
    unresolved_indirect_call_is_non_constant_time: bool = True
    min_severity: Severity = Severity.INFO

    def __post_init__(self):
        if self.max_call_depth < 1:
            raise ConfigurationError(f"max_call_depth must be at least 1, got {self.max_call_depth}")
        if self.max_workers < 1:
            raise ConfigurationError(f"max_workers must be at least 1, got {self.max_workers}")
        if self.timeout_seconds is not None and self.timeout_seconds <= 0:
            raise ConfigurationError(f"timeout_seconds must be positive, got {self.timeout_seconds}")

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'AnalyzerConfig':
        """Build a config from decoded YAML, validating every key"""
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise ConfigurationError("configuration must be a mapping")

        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigurationError(f"unknown configuration keys: {', '.join(unknown)}")

        kwargs: Dict[str, Any] = {}
        if 'enabled_rules' in data:
            kwargs['enabled_rules'] = _parse_rules(data['enabled_rules'])
        if 'max_call_depth' in data:
            kwargs['max_call_depth'] = _parse_int(data['max_call_depth'], 'max_call_depth')
        if 'max_workers' in data:
            kwargs['max_workers'] = _parse_int(data['max_workers'], 'max_workers')
        if 'timeout_seconds' in data and data['timeout_seconds'] is not None:
            kwargs['timeout_seconds'] = _parse_number(data['timeout_seconds'], 'timeout_seconds')
        if 'non_constant_time_functions' in data:
            names = data['non_constant_time_functions'] or []
            if not isinstance(names, list):
                raise ConfigurationError("non_constant_time_functions must be a list")
            kwargs['non_constant_time_functions'] = [str(n) for n in names]
        if 'unresolved_indirect_call_is_non_constant_time' in data:
            flag = data['unresolved_indirect_call_is_non_constant_time']
            if not isinstance(flag, bool):
                raise ConfigurationError("unresolved_indirect_call_is_non_constant_time must be a boolean")
            kwargs['unresolved_indirect_call_is_non_constant_time'] = flag
        if 'min_severity' in data:
            kwargs['min_severity'] = parse_severity(data['min_severity'])

        return cls(**kwargs)

    def with_overrides(self, **overrides: Any) -> 'AnalyzerConfig':
        """Return a copy with the given fields replaced (None values are ignored)"""
        known = {f.name for f in fields(self)}
        unknown = sorted(set(overrides) - known)
        if unknown:
            raise ConfigurationError(f"unknown configuration keys: {', '.join(unknown)}")
        changes = {k: v for k, v in overrides.items() if v is not None}
        if 'enabled_rules' in changes:
            changes['enabled_rules'] = _parse_rules(changes['enabled_rules'])
        if 'min_severity' in changes and not isinstance(changes['min_severity'], Severity):
            changes['min_severity'] = parse_severity(changes['min_severity'])
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'enabled_rules': [r.value for r in self.enabled_rules],
            'max_call_depth': self.max_call_depth,
            'max_workers': self.max_workers,
            'timeout_seconds': self.timeout_seconds,
            'non_constant_time_functions': list(self.non_constant_time_functions),
            'unresolved_indirect_call_is_non_constant_time': self.unresolved_indirect_call_is_non_constant_time,
            'min_severity': self.min_severity.value,
        }


def load_config(filepath: Union[str, Path]) -> AnalyzerConfig:
    """Load analyzer configuration from a YAML file"""
    filepath = Path(filepath)
    if not filepath.exists():
        raise ConfigurationError(f"configuration file not found: {filepath}")

    try:
        with open(filepath, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"cannot parse {filepath.name}: {e}") from e

    config = AnalyzerConfig.from_dict(data)
    logger.info(f"Loaded configuration from {filepath.name}")
    return config


def parse_severity(value: Any) -> Severity:
    if isinstance(value, Severity):
        return value
    try:
        return Severity(str(value).lower())
    except ValueError:
        raise ConfigurationError(f"unknown severity '{value}'") from None


def _parse_rules(value: Any) -> List[RuleId]:
    if isinstance(value, (str, RuleId)):
        value = [value]
    if not isinstance(value, (list, tuple)):
        raise ConfigurationError("enabled_rules must be a list of rule ids")
    rules: List[RuleId] = []
    for item in value:
        if isinstance(item, RuleId):
            rule = item
        else:
            try:
                rule = RuleId.parse(item)
            except ValueError as e:
                raise ConfigurationError(str(e)) from None
        if rule not in rules:
            rules.append(rule)
    return sorted(rules, key=lambda r: r.value)


def _parse_int(value: Any, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigurationError(f"{name} must be an integer, got {value!r}")
    return value


def _parse_number(value: Any, name: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigurationError(f"{name} must be a number, got {value!r}")
    return float(value)
