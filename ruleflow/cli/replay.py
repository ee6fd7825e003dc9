"""Replay command for the ruleflow CLI - determinism verification."""

import sys

import click

from ruleflow.cli.common import build_executor, emit_json, load_bundle, load_json
from ruleflow.errors import RuleflowError
from ruleflow.governance.replay import ReplayVerifier


@click.command()
@click.argument('bundle', type=click.Path(exists=True))
@click.argument('record', type=click.Path(exists=True))
@click.option('--json-output', '-j', 'json_output', is_flag=True, help='Output as JSON')
def replay_command(bundle, record, json_output):
    """Re-run a recorded step and check that it reproduces the recorded digest."""
    try:
        executor = build_executor(load_bundle(bundle))
        report = ReplayVerifier(executor).verify(load_json(record))
    except (RuleflowError, OSError, ValueError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    if json_output:
        emit_json(report.to_dict())
    else:
        click.echo(f"{'✓' if report.replay_pass else '✗'} Replay {'PASSED' if report.replay_pass else 'FAILED'}")
        click.echo(f"  Expected: {report.expected_digest}")
        click.echo(f"  Observed: {report.observed_digest}")
        if report.first_mismatch:
            mismatch = report.first_mismatch
            click.echo(f"  First mismatch: {mismatch['field']}: {mismatch['expected']!r} != {mismatch['observed']!r}")

    if not report.replay_pass:
        sys.exit(1)
