"""
Ruleflow: a deterministic business-logic runtime.

One orchestration step advances a flow state machine, runs rules, optionally
calls an API through an injected transport, and returns a structured trace
explaining everything it read, matched and changed.
"""

__version__ = "0.1.0"
