"""Explain command for the ruleflow CLI: preview which rules match and why."""

import sys

import click

from ruleflow.cli.common import emit_json, load_bundle, load_json
from ruleflow.errors import RuleflowError
from ruleflow.runtime.executor import ExecutionConfig
from ruleflow.runtime.rules import RulesEngine
from ruleflow.runtime.schema import RuleSet
from ruleflow.runtime.state import ExecutionContext
from ruleflow.runtime.trace import FrozenClock, explain_rules_trace


@click.command()
@click.argument('bundle', type=click.Path(exists=True))
@click.option('--context', '-c', 'context_path', type=click.Path(exists=True), help='Execution context JSON')
@click.option('--data', '-d', 'data_path', type=click.Path(exists=True), help='Step data JSON')
@click.option('--mode', type=click.Choice(['predicate', 'apply']), default='predicate', show_default=True)
@click.option('--json-output', '-j', 'json_output', is_flag=True, help='Output as JSON')
def explain_command(bundle, context_path, data_path, mode, json_output):
    """Evaluate the bundle's rules against a context and explain each decision."""
    try:
        rules = RuleSet.from_dict(load_bundle(bundle).get("rules") or [])
        context = ExecutionContext.from_dict(load_json(context_path, {}))
        data = load_json(data_path, {})
        config = ExecutionConfig.from_env()
        engine = RulesEngine(max_rules=config.max_rules, max_depth=config.max_depth, clock=FrozenClock())
        result = engine.evaluate(rules, context, data, mode=mode)
    except (RuleflowError, OSError, ValueError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    if json_output:
        emit_json({"data": result.data, "context": result.context.to_dict(), "trace": result.trace.to_dict()})
        return
    for line in explain_rules_trace(result.trace):
        click.echo(line)
