"""
Ruleflow API Orchestrator

Builds a request from a declarative ApiMapping, hands it to a caller-supplied
transport and folds the response back into data and context.

The runtime never performs network I/O itself. A transport is any callable
``(method, url, request) -> {"status": int, "body": ...}``; ``request`` holds
``headers`` and ``body``. Async transports are awaited by ``dispatch_async``.

Key classes:
- ApiOrchestrator: request building, dispatch and response folding
- ApiResult: updated data/context plus the ApiTrace
- StaticTransport: transport stub returning one fixed response
"""

from __future__ import annotations

import copy
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple
from urllib.parse import urlencode

from ruleflow.errors import ConfigurationError
from ruleflow.runtime.paths import MISSING, get_path, is_number, is_unsafe_key
from ruleflow.runtime.schema import ApiMapping, MappingSource
from ruleflow.runtime.state import ExecutionContext, StepScope
from ruleflow.runtime.trace import ApiTrace, SystemClock, TraceError

logger = logging.getLogger(__name__)

Transport = Callable[[str, str, Dict[str, Any]], Mapping[str, Any]]
AsyncTransport = Callable[[str, str, Dict[str, Any]], Awaitable[Mapping[str, Any]]]

LITERAL_PREFIX = "literal:"
RESPONSE_PREFIX = "response."


@dataclass
class ApiResult:
    data: Dict[str, Any]
    context: ExecutionContext
    trace: ApiTrace

    @property
    def ok(self) -> bool:
        return self.trace.ok


@dataclass
class StaticTransport:
    """Transport stub: answers every call with the same response and records the calls."""
    status: int = 200
    body: Any = None
    calls: List[Dict[str, Any]] = field(default_factory=list)

    def __call__(self, method: str, url: str, request: Dict[str, Any]) -> Dict[str, Any]:
        self.calls.append({"method": method, "url": url, "request": copy.deepcopy(request)})
        return {"status": self.status, "body": copy.deepcopy(self.body)}

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "StaticTransport":
        return cls(status=int(payload.get("status", 200)), body=payload.get("body"))


def sanitize_payload(value: Any) -> Any:
    """Copy of a JSON value with unsafe keys removed at every level."""
    if isinstance(value, dict):
        return {k: sanitize_payload(v) for k, v in value.items() if not is_unsafe_key(k)}
    if isinstance(value, list):
        return [sanitize_payload(item) for item in value]
    return value


def to_text(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"))
    return str(value)


def apply_source_transform(value: Any, transform: str) -> Any:
    if transform == "upper":
        return to_text(value).upper()
    if transform == "lower":
        return to_text(value).lower()
    if transform == "string":
        return to_text(value)
    if transform == "number":
        if is_number(value):
            return value
        try:
            number = float(to_text(value).strip())
        except ValueError:
            return None
        return int(number) if number.is_integer() else number
    if transform == "json":
        return json.dumps(value, separators=(",", ":"))
    raise ValueError(f"Unsupported transform: {transform}")


def resolve_source(source: MappingSource, scope: StepScope) -> Any:
    """Resolve one request field; MISSING when it has no value and no default."""
    if source.source.startswith(LITERAL_PREFIX):
        value = source.source[len(LITERAL_PREFIX):]
    else:
        value = scope.read(source.source)
    if value is MISSING and source.default is not None:
        value = copy.deepcopy(source.default)
    if value is not MISSING and source.transform:
        value = apply_source_transform(value, source.transform)
    return value


def append_query(endpoint: str, query: Optional[Mapping[str, Any]]) -> str:
    if not query:
        return endpoint
    params = [(key, to_text(value)) for key, value in query.items() if value is not None]
    if not params:
        return endpoint
    separator = "&" if "?" in endpoint else "?"
    return f"{endpoint}{separator}{urlencode(params)}"


class ApiOrchestrator:
    """
    Declarative API call runner.

    A failed call (the transport raised, returned something without a
    status, or returned status >= 400) is recorded in ``ApiTrace.error`` and
    the response map does not run.
    """

    def __init__(self, clock: Optional[SystemClock] = None):
        self.clock = clock or SystemClock()

    def build_request(self, mapping: ApiMapping, scope: StepScope) -> Dict[str, Any]:
        request: Dict[str, Any] = {}
        for part, sources in (("body", mapping.body), ("query", mapping.query), ("headers", mapping.headers)):
            resolved = {}
            for key, source in sources.items():
                value = resolve_source(source, scope)
                if value is not MISSING:
                    resolved[key] = sanitize_payload(copy.deepcopy(value))
            if resolved:
                request[part] = resolved
        return request

    def _start(self, mapping: ApiMapping, scope: StepScope) -> Tuple[ApiTrace, str, Dict[str, Any]]:
        request = self.build_request(mapping, scope)
        trace = ApiTrace(
            started_at=self.clock.now(),
            api_id=mapping.api_id,
            method=mapping.method,
            endpoint=mapping.endpoint,
            request=request,
        )
        url = append_query(mapping.endpoint, request.get("query"))
        outgoing: Dict[str, Any] = {"headers": dict(request.get("headers", {}))}
        if "body" in request and mapping.method != "GET":
            outgoing["body"] = request["body"]
        return trace, url, outgoing

    def _finish(self, mapping: ApiMapping, scope: StepScope, trace: ApiTrace, response: Any) -> None:
        if not isinstance(response, Mapping) or not is_number(response.get("status")):
            trace.error = TraceError(kind="transport", message="transport returned a response without a status")
            return

        status = int(response["status"])
        body = copy.deepcopy(response.get("body"))
        trace.response = {"status": status, "body": body}
        if status >= 400:
            trace.error = TraceError(kind="transport", message=f"HTTP {status}", code=str(status))
            return

        # A response that cannot be folded leaves data and context untouched
        checkpoint = scope.checkpoint()
        try:
            self.fold_response(mapping, body, scope)
        except (ConfigurationError, TypeError, ValueError) as exc:
            scope.restore(checkpoint)
            trace.error = TraceError(kind="response", message=str(exc) or type(exc).__name__)

    def fold_response(self, mapping: ApiMapping, body: Any, scope: StepScope) -> None:
        """Copy mapped response fields into data and context; absent fields are skipped."""
        for target, path in mapping.response_data.items():
            value = _response_value(body, path)
            if value is not MISSING:
                scope.write(target if target.startswith("data.") else f"data.{target}", value)
        for target, path in mapping.response_context.items():
            value = _response_value(body, path)
            if value is not MISSING:
                scope.write(target if target.startswith("context.") else f"context.{target}", value)

    def _fail(self, trace: ApiTrace, exc: Exception) -> None:
        status = getattr(exc, "status", None)
        trace.error = TraceError(
            kind="transport",
            message=str(exc) or type(exc).__name__,
            code=None if status is None else str(status),
        )

    def run(self, mapping: ApiMapping, scope: StepScope, transport: Transport) -> ApiTrace:
        """Dispatch against an existing scope; the scope is updated on success."""
        started = self.clock.perf()
        trace, url, outgoing = self._start(mapping, scope)
        logger.debug(f"api {mapping.api_id}: {mapping.method} {url}")
        try:
            response = transport(mapping.method, url, outgoing)
        except Exception as exc:
            self._fail(trace, exc)
        else:
            self._finish(mapping, scope, trace, response)
        trace.duration_ms = self.clock.elapsed_ms(started)
        if trace.error is not None:
            logger.debug(f"api {mapping.api_id} failed: {trace.error.message}")
        return trace

    async def run_async(self, mapping: ApiMapping, scope: StepScope, transport: AsyncTransport) -> ApiTrace:
        started = self.clock.perf()
        trace, url, outgoing = self._start(mapping, scope)
        logger.debug(f"api {mapping.api_id}: {mapping.method} {url}")
        try:
            response = await transport(mapping.method, url, outgoing)
        except Exception as exc:
            self._fail(trace, exc)
        else:
            self._finish(mapping, scope, trace, response)
        trace.duration_ms = self.clock.elapsed_ms(started)
        if trace.error is not None:
            logger.debug(f"api {mapping.api_id} failed: {trace.error.message}")
        return trace

    def dispatch(
        self,
        mapping: ApiMapping,
        context: ExecutionContext,
        data: Mapping[str, Any],
        transport: Transport,
    ) -> ApiResult:
        if not isinstance(mapping, ApiMapping):
            mapping = ApiMapping.from_dict(mapping)
        scope = StepScope(context, data)
        trace = self.run(mapping, scope, transport)
        return ApiResult(data=scope.data, context=scope.context, trace=trace)

    async def dispatch_async(
        self,
        mapping: ApiMapping,
        context: ExecutionContext,
        data: Mapping[str, Any],
        transport: AsyncTransport,
    ) -> ApiResult:
        if not isinstance(mapping, ApiMapping):
            mapping = ApiMapping.from_dict(mapping)
        scope = StepScope(context, data)
        trace = await self.run_async(mapping, scope, transport)
        return ApiResult(data=scope.data, context=scope.context, trace=trace)


def _response_value(body: Any, path: str) -> Any:
    if path.startswith(RESPONSE_PREFIX):
        path = path[len(RESPONSE_PREFIX):]
    return get_path(body, path)
