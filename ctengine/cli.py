"""
Command Line Interface for ctsentinel
"""

import argparse
import sys
import logging
from pathlib import Path
from typing import List, Optional

from . import __version__
from .analyzer import create_analyzer
from .errors import ConfigurationError
from .models import RuleId, Severity
from .reporters import get_reporter

EXIT_CLEAN = 0
EXIT_FINDINGS = 1
EXIT_HIGH = 2
EXIT_CRITICAL = 3
EXIT_MALFORMED = 4


def setup_logging(verbose: bool = False, debug: bool = False) -> None:
    """Configure logging"""
    if debug:
        level = logging.DEBUG
    elif verbose:
        level = logging.INFO
    else:
        level = logging.WARNING

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )


def parse_args(args: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments"""
    parser = argparse.ArgumentParser(
        prog='ctsentinel',
        description='ctsentinel - Check constant-time code against speculative-execution guidelines',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s module.yaml                          # Analyze with default settings
  %(prog)s module.yaml -f json -o out.json      # JSON output
  %(prog)s module.yaml -r R1 -r R3              # Only rules R1 and R3
  %(prog)s module.yaml -c ctsentinel.yaml -j 8  # Config file, 8 workers
        """
    )

    parser.add_argument(
        'target',
        nargs='?',
        help='Serialized module (YAML or JSON) produced by the front end'
    )

    # Output options
    output_group = parser.add_argument_group('Output Options')
    output_group.add_argument(
        '-o', '--output',
        help='Output file path (default: stdout)'
    )
    output_group.add_argument(
        '-f', '--format',
        choices=['console', 'json', 'sarif'],
        default='console',
        help='Output format (default: console)'
    )
    output_group.add_argument(
        '--no-color',
        action='store_true',
        help='Disable colored output'
    )

    # Rule options
    rule_group = parser.add_argument_group('Rule Options')
    rule_group.add_argument(
        '-c', '--config',
        help='Analyzer configuration file (YAML)'
    )
    rule_group.add_argument(
        '-r', '--rule',
        action='append',
        dest='rules',
        help='Enable only this rule (can be repeated). E.g., -r R1 -r R4'
    )
    rule_group.add_argument(
        '-s', '--severity',
        choices=[s.value for s in Severity],
        help='Minimum severity level to report'
    )
    rule_group.add_argument(
        '--list-rules',
        action='store_true',
        help='List all rules and exit'
    )

    # Resource options
    resource_group = parser.add_argument_group('Resource Options')
    resource_group.add_argument(
        '-j', '--jobs',
        type=int,
        help='Number of parallel workers (default: 4)'
    )
    resource_group.add_argument(
        '--timeout',
        type=float,
        help='Run-level timeout in seconds, checked between functions'
    )
    resource_group.add_argument(
        '--max-call-depth',
        type=int,
        help='Call-chain depth bound for shape classification (default: 32)'
    )

    # Other options
    parser.add_argument(
        '-v', '--verbose',
        action='store_true',
        help='Verbose output'
    )
    parser.add_argument(
        '--debug',
        action='store_true',
        help='Debug mode (very verbose)'
    )
    parser.add_argument(
        '--version',
        action='version',
        version=f'%(prog)s {__version__}'
    )

    return parser.parse_args(args)


def list_rules() -> None:
    """List all rules"""
    print(f"\nRules ({len(RuleId)} total):\n")
    print("-" * 60)
    for rule in RuleId:
        print(f"  {rule.value:<4} {rule.title:<45} [{rule.default_severity.value}]")
    print("-" * 60)


def run_analysis(args: argparse.Namespace) -> int:
    """Run the analysis and write the report"""
    analyzer = create_analyzer(
        args.config,
        enabled_rules=args.rules,
        max_workers=args.jobs,
        timeout_seconds=args.timeout,
        max_call_depth=args.max_call_depth,
        min_severity=args.severity,
    )
    result = analyzer.analyze_file(args.target)

    reporter_kwargs = {}
    if args.format == 'console':
        reporter_kwargs['use_colors'] = not args.no_color
        reporter_kwargs['verbose'] = args.verbose

    reporter = get_reporter(args.format, **reporter_kwargs)
    reporter.report(result, args.output)

    return exit_code(result)


def exit_code(result) -> int:
    """Exit code based on run state and the highest severity found"""
    if result.failed:
        return EXIT_MALFORMED
    highest = result.highest_severity()
    if highest is None:
        return EXIT_CLEAN
    if highest == Severity.CRITICAL:
        return EXIT_CRITICAL
    if highest == Severity.HIGH:
        return EXIT_HIGH
    return EXIT_FINDINGS


def main(args: Optional[List[str]] = None) -> int:
    """Main entry point"""
    parsed_args = parse_args(args)

    setup_logging(verbose=parsed_args.verbose, debug=parsed_args.debug)

    if parsed_args.list_rules:
        list_rules()
        return 0

    if not parsed_args.target:
        print("Error: a module file is required", file=sys.stderr)
        return 1

    target = Path(parsed_args.target)
    if not target.exists():
        print(f"Error: Module file does not exist: {target}", file=sys.stderr)
        return 1

    try:
        return run_analysis(parsed_args)
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nAnalysis interrupted by user", file=sys.stderr)
        return 130
    except Exception as e:
        if parsed_args.debug:
            raise
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == '__main__':
    sys.exit(main())
