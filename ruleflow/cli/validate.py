"""Validate command for the ruleflow CLI."""

import sys

import click

from ruleflow.cli.common import emit_json, load_bundle
from ruleflow.errors import RuleflowError
from ruleflow.governance.validator import collect_issues


@click.command()
@click.argument('bundle', type=click.Path(exists=True))
@click.option('--json-output', '-j', 'json_output', is_flag=True, help='Output as JSON')
def validate_command(bundle, json_output):
    """Validate a flow / rules / API mapping bundle."""
    try:
        payload = load_bundle(bundle)
        report = collect_issues(payload["flow"], payload.get("rules"), payload.get("apiMappings"))
    except (RuleflowError, OSError, ValueError) as e:
        if json_output:
            emit_json({"ok": False, "issues": [{"path": "", "message": str(e)}]})
        else:
            click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    if json_output:
        emit_json(report.to_dict())
    elif report.ok:
        click.echo("✓ Bundle is valid")
    else:
        click.echo(f"✗ {len(report.issues)} issue(s)", err=True)
        for issue in report.issues:
            click.echo(f"  {issue}", err=True)

    if not report.ok:
        sys.exit(1)
