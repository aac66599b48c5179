"""
Rule Registry — the Rule Evaluator's lookup table.

Behavioral Contract:
- Each rule is a named pure function ``fn(context) -> iterable of candidates``.
- Rules are looked up by ``(kind, key)``; adding a rule is a registry insertion.
- Evaluation runs rules in registration order, so the same context always
  yields the same candidates in the same order.
- No I/O happens here. Persistence is the upsert store's job.
"""

from typing import Callable, Dict, Iterable, List, Optional, Union

from operator_engine.errors import DuplicateRuleError
from operator_engine.models.context import RuleContext
from operator_engine.models.next_action import NextActionCandidate
from operator_engine.models.risk import RiskCandidate

Candidate = Union[RiskCandidate, NextActionCandidate]
RuleFn = Callable[[RuleContext], Iterable[Candidate]]

FLAG = "flag"
ACTION = "action"


def candidate_scope(candidate: Candidate) -> str:
    """The scope a candidate belongs to: entity type for actions, flag scope for flags."""
    if isinstance(candidate, NextActionCandidate):
        return candidate.entity_type
    return candidate.scope


class RegisteredRule:
    """A rule entry: key, kind and the pure function that evaluates it."""

    def __init__(self, key: str, kind: str, fn: RuleFn, description: str = ""):
        self.key = key
        self.kind = kind
        self.fn = fn
        self.description = description or (fn.__doc__ or "").strip()

    def __repr__(self) -> str:
        return f"RegisteredRule({self.kind}:{self.key})"


class RuleRegistry:
    """Fixed, finite set of rules keyed by ``(kind, key)``."""

    def __init__(self):
        self._rules: Dict[str, RegisteredRule] = {}

    def register(self, key: str, kind: str, fn: RuleFn, description: str = "") -> None:
        if kind not in (FLAG, ACTION):
            raise ValueError(f"Unknown rule kind: {kind}")
        registry_key = f"{kind}:{key}"
        if registry_key in self._rules:
            raise DuplicateRuleError(registry_key)
        self._rules[registry_key] = RegisteredRule(key, kind, fn, description)

    def rule(self, key: str, kind: str) -> Callable[[RuleFn], RuleFn]:
        """Decorator form of :meth:`register`."""

        def decorator(fn: RuleFn) -> RuleFn:
            self.register(key, kind, fn)
            return fn

        return decorator

    def get(self, key: str, kind: str) -> Optional[RegisteredRule]:
        return self._rules.get(f"{kind}:{key}")

    def keys(self, kind: Optional[str] = None) -> List[str]:
        return [r.key for r in self._rules.values() if kind is None or r.kind == kind]

    def __len__(self) -> int:
        return len(self._rules)

    def evaluate(
        self,
        context: RuleContext,
        kind: Optional[str] = None,
        scope: Optional[str] = None,
    ) -> List[Candidate]:
        """
        Run every registered rule (optionally only one kind) against the
        snapshot and return the candidates, optionally filtered to a scope.
        """
        out: List[Candidate] = []
        for entry in self._rules.values():
            if kind is not None and entry.kind != kind:
                continue
            for candidate in entry.fn(context) or ():
                if scope is not None and candidate_scope(candidate) != scope:
                    continue
                out.append(candidate)
        return out

    def evaluate_flags(self, context: RuleContext, scope: Optional[str] = None) -> List[RiskCandidate]:
        return self.evaluate(context, kind=FLAG, scope=scope)

    def evaluate_actions(
        self, context: RuleContext, scope: Optional[str] = None
    ) -> List[NextActionCandidate]:
        return self.evaluate(context, kind=ACTION, scope=scope)


def default_registry() -> RuleRegistry:
    """Build the registry with every built-in risk and next-action rule."""
    from operator_engine.rules import next_action_rules, risk_rules

    registry = RuleRegistry()
    risk_rules.register(registry)
    next_action_rules.register(registry)
    return registry
