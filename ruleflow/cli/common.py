"""Shared helpers for the ruleflow CLI commands."""

import json
from pathlib import Path
from typing import Any, Dict, Optional

import click

from ruleflow.errors import ConfigurationError
from ruleflow.runtime.executor import ExecutionConfig, Executor
from ruleflow.runtime.trace import FrozenClock, SystemClock


def load_json(path: Optional[str], default: Any = None) -> Any:
    if path is None:
        return default
    with open(Path(path)) as f:
        return json.load(f)


def load_bundle(path: str) -> Dict[str, Any]:
    """
    Read a bundle file: ``{"flow": ..., "rules": ..., "apiMappings": ...}``.

    ``rules`` and ``apiMappings`` are optional.
    """
    bundle = load_json(path)
    if not isinstance(bundle, dict) or "flow" not in bundle:
        raise ConfigurationError("bundle must be an object with a 'flow' key", str(path))
    return bundle


def build_executor(bundle: Dict[str, Any], validate: bool = True, frozen_clock: bool = False) -> Executor:
    config = ExecutionConfig.from_env(validate=validate)
    clock = FrozenClock() if frozen_clock else SystemClock()
    return Executor(
        bundle["flow"],
        bundle.get("rules"),
        bundle.get("apiMappings"),
        config=config,
        clock=clock,
    )


def emit_json(payload: Any) -> None:
    click.echo(json.dumps(payload, indent=2, sort_keys=True))
