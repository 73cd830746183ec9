"""Shared test fixtures for the ctsentinel test suite."""

import sys
import textwrap
import pytest
from pathlib import Path

# Ensure ctengine is importable
sys.path.insert(0, str(Path(__file__).parent.parent))

from ctengine.analyzer import SpeculationAnalyzer
from ctengine.config import AnalyzerConfig
from ctengine.dataflow import TaintEngine
from ctengine.ir_loader import IRLoader
from ctengine.models import AnalysisResult, Finding, RuleId, Severity

FIXTURES_DIR = Path(__file__).parent / "fixtures"


@pytest.fixture
def fixtures_dir():
    """Path to test fixtures directory."""
    return FIXTURES_DIR


@pytest.fixture
def load_fixture():
    """Load a module from tests/fixtures/<name>.yaml."""
    loader = IRLoader()

    def _load(name):
        return loader.load_file(FIXTURES_DIR / f"{name}.yaml")
    return _load


@pytest.fixture
def module_from_yaml():
    """Build a validated module from inline YAML."""
    loader = IRLoader()

    def _build(text):
        return loader.load_string(textwrap.dedent(text))
    return _build


@pytest.fixture
def taint_of():
    """Run the taint engine on one function of a module."""
    def _taint(module, function_id):
        return TaintEngine(module).analyze_function(module.function(function_id))
    return _taint


@pytest.fixture
def analyzer():
    """Sequential analyzer with every rule enabled."""
    return SpeculationAnalyzer(AnalyzerConfig(max_workers=1))


@pytest.fixture
def run_rules():
    """Analyze a module with only the given rules enabled."""
    def _run(module, *rules, **config):
        cfg = AnalyzerConfig(enabled_rules=list(rules) or list(RuleId), max_workers=1, **config)
        return SpeculationAnalyzer(cfg).analyze(module)
    return _run


@pytest.fixture
def sample_finding():
    """A fully populated R3 finding."""
    return Finding(
        rule_id=RuleId.R3,
        function_id="aes_gcm_seal",
        block_id="cleanup",
        block_index=4,
        instruction_index=2,
        severity=Severity.CRITICAL,
        taint_provenance=("key", "round_keys", "tag_ok"),
        description="scrub of Secret value 'round_keys' can be skipped at 'verify'",
        metadata={'scrubbed_value': 'round_keys'},
    )


@pytest.fixture
def sample_finding_high():
    """A high severity R4 finding."""
    return Finding(
        rule_id=RuleId.R4,
        function_id="aes_gcm_init",
        block_id="entry",
        block_index=0,
        instruction_index=1,
        severity=Severity.HIGH,
        taint_provenance=("key",),
        description="Secret value 'key' stored to global location 'g_ctx'",
        metadata={'location': 'g_ctx'},
    )


@pytest.fixture
def sample_result(sample_finding, sample_finding_high):
    """An analysis result with mixed severity findings."""
    result = AnalysisResult(
        module_name="aes_gcm",
        findings=[sample_finding, sample_finding_high],
        functions_analyzed=3,
        rules_applied=list(RuleId),
        duration_seconds=0.25,
    )
    result.sort_findings()
    return result
