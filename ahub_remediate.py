#!/usr/bin/env python3
"""
Azure Hybrid Benefit - License Remediation

Scans subscriptions for Windows VMs and converts pay-as-you-go Windows Server
and SQL Server licensing to Azure Hybrid Benefit. Writes a CSV report of
every VM processed.

Usage:
    python3 ahub_remediate.py
    python3 ahub_remediate.py --subscription-ids <id>,<id> --mode OS
    python3 ahub_remediate.py --throttle-limit 20 --dry-run
"""
import argparse
import logging
import sys
from typing import Callable

from azure.identity import DefaultAzureCredential

from lib.config import (
    generate_sample_config,
    load_config,
    parse_mode,
    parse_subscription_ids,
    parse_throttle_limit,
)
from lib.constants import MAX_THROTTLE_LIMIT, MIN_THROTTLE_LIMIT, VALID_MODES
from lib.gateway import AzureGateway, SubscriptionListingError
from lib.report import export_report, print_run_summary
from lib.runner import run_remediation
from lib.utils import generate_run_id, get_file_timestamp, is_auth_error, setup_logging

logger = logging.getLogger(__name__)


def _arg_type(parser: Callable) -> Callable:
    """Adapt a config parser (raising ValueError) for argparse."""
    def convert(value):
        try:
            return parser(value)
        except ValueError as e:
            raise argparse.ArgumentTypeError(str(e))
    convert.__name__ = parser.__name__
    return convert


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Azure Hybrid Benefit - License Remediation')
    parser.add_argument(
        '--subscription-ids',
        dest='subscription_ids',
        type=_arg_type(parse_subscription_ids),
        help='Comma-separated subscription IDs (default: all enabled subscriptions)'
    )
    parser.add_argument(
        '--throttle-limit',
        dest='throttle_limit',
        type=_arg_type(parse_throttle_limit),
        help=f'Parallel workers per stage, {MIN_THROTTLE_LIMIT}-{MAX_THROTTLE_LIMIT} (default: 10)'
    )
    parser.add_argument(
        '--mode',
        type=_arg_type(parse_mode),
        help=f"Licenses to convert: {', '.join(VALID_MODES)} (default: Both)"
    )
    parser.add_argument(
        '--dry-run',
        dest='dry_run',
        action='store_true',
        help='Evaluate and report without changing any license'
    )
    parser.add_argument('--output', help='Output directory for report and log (default: .)')
    parser.add_argument('--log-level', dest='log_level', help='Logging level (default: INFO)')
    parser.add_argument('--config', help='Path to YAML config file')
    parser.add_argument(
        '--generate-config',
        action='store_true',
        help='Print a sample config file and exit'
    )
    return parser


def _log_auth_hint(exc: Exception) -> None:
    if is_auth_error(exc):
        logger.error("Check your Azure credentials (az login, managed identity) and subscription read access.")


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.generate_config:
        print(generate_sample_config())
        return

    try:
        config = load_config(args)
    except (ValueError, FileNotFoundError) as e:
        parser.error(str(e))

    setup_logging(config['log_level'], output_dir=config['output'])
    run_id = generate_run_id()
    logger.info(f"Run {run_id}: mode={config['mode']}, throttle limit={config['throttle_limit']}"
                f"{', dry run' if config['dry_run'] else ''}")

    gateway = None
    try:
        gateway = AzureGateway(DefaultAzureCredential())
        report = run_remediation(
            gateway,
            subscription_ids=config['subscription_ids'],
            mode=config['mode'],
            throttle_limit=config['throttle_limit'],
            dry_run=config['dry_run'],
        )
    except SubscriptionListingError as e:
        logger.error(f"{e}; aborting before any VM work")
        _log_auth_hint(e)
        sys.exit(1)
    except Exception as e:
        logger.error(f"Run failed: {e}")
        _log_auth_hint(e)
        sys.exit(1)
    finally:
        if gateway is not None:
            gateway.close()

    filepath = export_report(report.results, config['output'], get_file_timestamp())
    print_run_summary(report)
    if filepath:
        print(f"Report: {filepath}")
    else:
        print("ERROR: Report export failed; see log for details")


if __name__ == '__main__':
    main()
