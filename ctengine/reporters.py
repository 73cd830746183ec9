"""
Report generators for analysis results
"""

import json
from typing import Optional
from datetime import datetime
import sys

from . import __version__
from .models import AnalysisResult, Finding, RuleId, Severity


class BaseReporter:
    """Base class for reporters"""

    def report(self, result: AnalysisResult, output: Optional[str] = None) -> str:
        """Generate report and optionally write to file"""
        raise NotImplementedError

    def _write_output(self, content: str, output: Optional[str]) -> None:
        """Write content to file or stdout"""
        if output:
            with open(output, 'w', encoding='utf-8') as f:
                f.write(content)
        else:
            print(content)


class ConsoleReporter(BaseReporter):
    """Console/terminal output reporter with colors"""

    # ANSI color codes
    COLORS = {
        'critical': '\033[91m',  # Red
        'high': '\033[93m',      # Yellow
        'medium': '\033[94m',    # Blue
        'low': '\033[96m',       # Cyan
        'info': '\033[90m',      # Gray
        'reset': '\033[0m',
        'bold': '\033[1m',
        'green': '\033[92m',
    }

    def __init__(self, use_colors: bool = True, verbose: bool = False):
        self.use_colors = use_colors and sys.stdout.isatty()
        self.verbose = verbose

    def _color(self, text: str, color: str) -> str:
        """Apply color to text if colors enabled"""
        if not self.use_colors:
            return text
        return f"{self.COLORS.get(color, '')}{text}{self.COLORS['reset']}"

    def report(self, result: AnalysisResult, output: Optional[str] = None) -> str:
        """Generate console report"""
        lines = [
            "",
            self._color("=" * 60, 'bold'),
            self._color("  SPECULATION ANALYSIS RESULTS", 'bold'),
            self._color("=" * 60, 'bold'),
            "",
            f"Module: {result.module_name}",
            f"Functions analyzed: {result.functions_analyzed}",
            f"Rules applied: {', '.join(r.value for r in result.rules_applied)}",
            f"Duration: {result.duration_seconds:.2f} seconds",
        ]
        if result.timed_out:
            lines.append(self._color("Run timed out: results cover completed functions only", 'high'))
        lines.append("")

        if result.failed:
            lines.append(self._color("ANALYSIS FAILED:", 'critical'))
            for error in result.errors:
                lines.append(f"  - {error}")
            lines.append("")
            lines.append(self._color("=" * 60, 'bold'))
            content = "\n".join(lines)
            self._write_output(content, output)
            return content

        lines.append(self._color("SUMMARY BY SEVERITY:", 'bold'))
        summary = result.summary
        for severity in Severity:
            count = summary.get(severity.value, 0)
            if count > 0:
                lines.append(f"  {self._color(severity.value.upper(), severity.value)}: {count}")
        lines.append("")

        total = len(result.findings)
        if total == 0:
            lines.append(self._color("No guideline violations found!", 'green'))
        else:
            lines.append(self._color(f"FINDINGS ({total} total):", 'bold'))
            lines.append("-" * 60)
            for finding in result.findings:
                lines.extend(self._format_finding(finding))

        if result.anomalies:
            lines.append("")
            lines.append(self._color(f"ANOMALIES ({len(result.anomalies)}):", 'high'))
            for anomaly in result.anomalies:
                where = anomaly.function_id
                if anomaly.block_id:
                    where = f"{where}:{anomaly.block_id}"
                lines.append(f"  - {anomaly.kind.value} in {where}: {anomaly.detail}")

        if self.verbose and result.declassifications:
            lines.append("")
            lines.append(self._color("DECLASSIFICATIONS:", 'bold'))
            for d in result.declassifications:
                lines.append(f"  - {d.function_id}:{d.block_id}[{d.instruction_index}] "
                             f"{d.input_value} ({d.input_label}) -> {d.output_value}")

        lines.append("")
        lines.append(self._color("=" * 60, 'bold'))

        content = "\n".join(lines)
        self._write_output(content, output)
        return content

    def _format_finding(self, finding: Finding):
        lines = [
            "",
            f"  {self._color(f'[{finding.severity.value.upper()}]', finding.severity.value)} "
            f"{self._color(finding.rule_id.value, 'bold')}: {finding.rule_id.title}",
            f"  Location: {finding.location}",
            f"  Provenance: {' -> '.join(finding.taint_provenance)}",
        ]
        if self.verbose:
            lines.append(f"  Description: {finding.description}")
        return lines


class JSONReporter(BaseReporter):
    """JSON format reporter"""

    def report(self, result: AnalysisResult, output: Optional[str] = None) -> str:
        """Generate JSON report"""
        report_data = {
            'analysis_info': {
                'module': result.module_name,
                'timestamp': datetime.now().isoformat(),
                'state': result.state.value,
                'timed_out': result.timed_out,
                'functions_analyzed': result.functions_analyzed,
                'rules_applied': [r.value for r in result.rules_applied],
                'duration_seconds': result.duration_seconds,
            },
            'summary': result.summary,
            'total_findings': len(result.findings),
            'findings': [f.to_dict() for f in result.findings],
            'anomalies': [a.to_dict() for a in result.anomalies],
            'declassifications': [d.to_dict() for d in result.declassifications],
            'errors': result.errors,
        }

        content = json.dumps(report_data, indent=2)
        self._write_output(content, output)
        return content


class SARIFReporter(BaseReporter):
    """SARIF format reporter (Static Analysis Results Interchange Format)"""

    SARIF_VERSION = "2.1.0"
    SCHEMA_URI = "https://raw.githubusercontent.com/oasis-tcs/sarif-spec/master/Schemata/sarif-schema-2.1.0.json"

    def report(self, result: AnalysisResult, output: Optional[str] = None) -> str:
        """Generate SARIF report"""
        rules = [
            {
                'id': rule.value,
                'name': rule.title.replace(' ', ''),
                'shortDescription': {'text': rule.title},
                'properties': {
                    'security-severity': self._severity_to_score(rule.default_severity),
                },
            }
            for rule in RuleId
        ]

        results = []
        for finding in result.findings:
            results.append({
                'ruleId': finding.rule_id.value,
                'level': self._severity_to_level(finding.severity),
                'message': {'text': finding.description},
                'locations': [{
                    'physicalLocation': {
                        'artifactLocation': {'uri': result.module_name},
                    },
                    'logicalLocations': [{
                        'name': finding.block_id,
                        'fullyQualifiedName': finding.location,
                        'kind': 'function',
                    }],
                }],
                'properties': {
                    'function': finding.function_id,
                    'block': finding.block_id,
                    'instructionIndex': finding.instruction_index,
                    'taintProvenance': list(finding.taint_provenance),
                },
            })

        notifications = [{'message': {'text': e}, 'level': 'error'} for e in result.errors]
        notifications.extend(
            {'message': {'text': f"{a.kind.value}: {a.detail}"}, 'level': 'warning'}
            for a in result.anomalies
        )

        sarif = {
            '$schema': self.SCHEMA_URI,
            'version': self.SARIF_VERSION,
            'runs': [{
                'tool': {
                    'driver': {
                        'name': 'ctsentinel',
                        'version': __version__,
                        'rules': rules,
                    }
                },
                'results': results,
                'invocations': [{
                    'executionSuccessful': not result.failed,
                    'toolExecutionNotifications': notifications,
                }]
            }]
        }

        content = json.dumps(sarif, indent=2)
        self._write_output(content, output)
        return content

    def _severity_to_level(self, severity: Severity) -> str:
        """Convert severity to SARIF level"""
        mapping = {
            Severity.CRITICAL: 'error',
            Severity.HIGH: 'error',
            Severity.MEDIUM: 'warning',
            Severity.LOW: 'note',
            Severity.INFO: 'note',
        }
        return mapping.get(severity, 'warning')

    def _severity_to_score(self, severity: Severity) -> str:
        """Convert severity to security-severity score"""
        mapping = {
            Severity.CRITICAL: '9.0',
            Severity.HIGH: '7.0',
            Severity.MEDIUM: '5.0',
            Severity.LOW: '3.0',
            Severity.INFO: '1.0',
        }
        return mapping.get(severity, '5.0')


def get_reporter(format: str, **kwargs) -> BaseReporter:
    """Factory function to get reporter by format"""
    reporters = {
        'console': ConsoleReporter,
        'json': JSONReporter,
        'sarif': SARIFReporter,
    }

    reporter_class = reporters.get(format.lower())
    if not reporter_class:
        raise ValueError(f"Unknown report format: {format}. Supported: {list(reporters.keys())}")

    return reporter_class(**kwargs)
