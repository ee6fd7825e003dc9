"""Step command for the ruleflow CLI."""

import json
import sys

import click

from ruleflow.cli.common import build_executor, emit_json, load_bundle, load_json
from ruleflow.errors import RuleflowError
from ruleflow.governance.replay import ReplayVerifier
from ruleflow.runtime.api_orchestrator import StaticTransport
from ruleflow.runtime.trace import explain_runtime_trace


@click.command()
@click.argument('bundle', type=click.Path(exists=True))
@click.option('--event', '-e', required=True, help='Event to apply')
@click.option('--state', '-s', 'state_id', default=None, help='Current state (defaults to the initial state)')
@click.option('--context', '-c', 'context_path', type=click.Path(exists=True), help='Execution context JSON')
@click.option('--data', '-d', 'data_path', type=click.Path(exists=True), help='Step data JSON')
@click.option('--response', '-r', 'response_path', type=click.Path(exists=True),
              help='Stub API response JSON: {"status": ..., "body": ...}')
@click.option('--record', 'record_path', type=click.Path(), help='Write a replay record to this path')
@click.option('--frozen-clock', is_flag=True, help='Pin timestamps for reproducible output')
@click.option('--no-validate', is_flag=True, help='Skip bundle validation')
@click.option('--json-output', '-j', 'json_output', is_flag=True, help='Output as JSON')
def step_command(bundle, event, state_id, context_path, data_path, response_path, record_path,
                 frozen_clock, no_validate, json_output):
    """Run one orchestration step and print the outcome."""
    try:
        executor = build_executor(load_bundle(bundle), validate=not no_validate, frozen_clock=frozen_clock)
        context = load_json(context_path, {})
        data = load_json(data_path, {})
        response = load_json(response_path)
        transport = StaticTransport.from_dict(response) if response is not None else None
        state_id = state_id or executor.flow.initial_state

        if record_path:
            result, record = ReplayVerifier(executor).record(state_id, event, context, data, transport=transport)
            with open(record_path, "w") as f:
                json.dump(record, f, indent=2, sort_keys=True)
        else:
            result = executor.execute_step(state_id, event, context, data, transport=transport)
    except (RuleflowError, OSError, ValueError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    if json_output:
        emit_json(dict(result.to_dict(), digest=result.digest()))
        return

    click.echo(f"{result.reason}: {state_id} -> {result.next_state_id} (page {result.ui_page_id})")
    for line in explain_runtime_trace(result.trace):
        click.echo(f"  {line}")
    if result.errors:
        sys.exit(2)
