"""Ruleflow CLI Package - one module per command."""

import logging

import click

from ruleflow.cli.step import step_command
from ruleflow.cli.validate import validate_command
from ruleflow.cli.explain import explain_command
from ruleflow.cli.replay import replay_command


@click.group()
@click.option('--verbose', '-v', is_flag=True, help='Enable debug logging')
def main(verbose):
    """Ruleflow CLI - deterministic flow, rules and API orchestration."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )


main.add_command(step_command, "step")
main.add_command(validate_command, "validate")
main.add_command(explain_command, "explain")
main.add_command(replay_command, "replay")

__all__ = [
    "main",
    "step_command",
    "validate_command",
    "explain_command",
    "replay_command",
]
