"""
Ruleflow Replay Verifier

Checks the determinism contract: re-running a recorded step against the same
bundle, with the recorded API response played back, must reproduce the same
result digest.

A replay record is plain JSON:

    {
      "input":  {"stateId", "event", "context", "data"},
      "result": StepResult.to_dict(),
      "digest": "sha256:..."
    }
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Tuple

from ruleflow.errors import ConfigurationError, TransportError
from ruleflow.runtime.api_orchestrator import StaticTransport, Transport
from ruleflow.runtime.executor import Executor, StepResult
from ruleflow.runtime.paths import strip_missing
from ruleflow.runtime.state import ExecutionContext
from ruleflow.runtime.trace import VOLATILE_KEYS, compute_digest

logger = logging.getLogger(__name__)


@dataclass
class ReplayReport:
    """Outcome of replaying one recorded step."""
    replay_pass: bool
    expected_digest: str
    observed_digest: str
    first_mismatch: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "replayPass": self.replay_pass,
            "expectedDigest": self.expected_digest,
            "observedDigest": self.observed_digest,
            "firstMismatch": self.first_mismatch,
        }


class _FailingTransport:
    """Plays back a recorded transport failure."""

    def __init__(self, message: str, status: Optional[int] = None):
        self.message = message
        self.status = status

    def __call__(self, method: str, url: str, request: Dict[str, Any]) -> Dict[str, Any]:
        raise TransportError(self.message, status=self.status)


def recorded_transport(result: Mapping[str, Any]) -> Optional[Transport]:
    """Rebuild the transport behaviour captured in a recorded StepResult."""
    api = result.get("trace", {}).get("api")
    if not api:
        return None
    response = api.get("response")
    if response is not None:
        return StaticTransport.from_dict(response)
    error = api.get("error") or {}
    code = error.get("code")
    status = int(code) if code and str(code).isdigit() else None
    return _FailingTransport(error.get("message", "transport failed"), status)


def first_difference(expected: Any, observed: Any, path: str = "") -> Optional[Dict[str, Any]]:
    """First differing leaf between two JSON values, wall-clock fields ignored."""
    if isinstance(expected, dict) and isinstance(observed, dict):
        for key in sorted(set(expected) | set(observed)):
            if key in VOLATILE_KEYS:
                continue
            child = f"{path}.{key}" if path else key
            if key not in expected or key not in observed:
                return {"field": child, "expected": expected.get(key), "observed": observed.get(key)}
            found = first_difference(expected[key], observed[key], child)
            if found is not None:
                return found
        return None
    if isinstance(expected, list) and isinstance(observed, list):
        for i, (left, right) in enumerate(zip(expected, observed)):
            found = first_difference(left, right, f"{path}[{i}]")
            if found is not None:
                return found
        if len(expected) != len(observed):
            return {"field": f"{path}.length", "expected": len(expected), "observed": len(observed)}
        return None
    if expected != observed or type(expected) is not type(observed):
        return {"field": path, "expected": expected, "observed": observed}
    return None


class ReplayVerifier:
    """
    Records and verifies orchestration steps for one Executor.
    """

    def __init__(self, executor: Executor):
        self.executor = executor

    def record(
        self,
        state_id: str,
        event: str,
        context: Any,
        data: Optional[Mapping[str, Any]] = None,
        transport: Optional[Transport] = None,
    ) -> Tuple[StepResult, Dict[str, Any]]:
        """Run a step and return it together with its replay record."""
        result = self.executor.execute_step(state_id, event, context, data, transport=transport)
        record = {
            "input": {
                "stateId": state_id,
                "event": event,
                "context": context.to_dict() if isinstance(context, ExecutionContext) else dict(context),
                "data": strip_missing(dict(data or {})),
            },
            "result": result.to_dict(),
            "digest": result.digest(),
        }
        return result, record

    def verify(self, record: Mapping[str, Any]) -> ReplayReport:
        """
        Re-run a recorded step and compare digests.

        The recorded digest is trusted when present; otherwise it is
        recomputed from the recorded result.
        """
        try:
            step_input = record["input"]
            recorded = record["result"]
        except (KeyError, TypeError):
            raise ConfigurationError("replay record needs 'input' and 'result'", "record")

        expected_digest = record.get("digest") or compute_digest(recorded)
        result = self.executor.execute_step(
            step_input["stateId"],
            step_input["event"],
            step_input.get("context", {}),
            step_input.get("data", {}),
            transport=recorded_transport(recorded),
        )
        observed = result.to_dict()
        observed_digest = result.digest()

        replay_pass = observed_digest == expected_digest
        mismatch = None
        if not replay_pass:
            mismatch = first_difference(recorded, observed) or {
                "field": "digest",
                "expected": expected_digest,
                "observed": observed_digest,
            }
            logger.debug(f"replay mismatch at {mismatch['field']}")

        return ReplayReport(
            replay_pass=replay_pass,
            expected_digest=expected_digest,
            observed_digest=observed_digest,
            first_mismatch=mismatch,
        )
