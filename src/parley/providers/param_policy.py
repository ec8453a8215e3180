from __future__ import annotations
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, FrozenSet, List, Optional

import yaml

from parley.core.errors import ProviderClientError


class PolicyAction(str, Enum):
    ALLOW = "allow"
    DROP = "drop"
    REJECT = "reject"


@dataclass(frozen=True)
class PolicyRule:
    pattern: re.Pattern
    action: PolicyAction
    params: FrozenSet[str] = frozenset()
    message: Optional[str] = None

    def matches(self, model_id: str) -> bool:
        return self.pattern.search(model_id) is not None


@dataclass
class PolicyOutcome:
    params: Dict[str, Any]
    dropped: Dict[str, Any] = field(default_factory=dict)
    warning: Optional[str] = None


@dataclass
class ParamPolicy:
    """
    Per-provider rules deciding which generation params a backend model
    accepts. Rules are tried in file order against the backend model id and
    the first match decides; no match means allow.

        rules:
          - when_model_matches: "^o1"
            action: drop          # allow | drop | reject
            params: [temperature, top_p]
            message: "o1 models only accept default sampling."
    """
    rules: List[PolicyRule]
    source: Optional[Path] = None

    @classmethod
    def load(cls, path: Path) -> "ParamPolicy":
        data = yaml.safe_load(path.read_text()) or {}
        rules: List[PolicyRule] = []
        for i, raw in enumerate(data.get("rules") or []):
            try:
                action = PolicyAction(str(raw.get("action", "allow")).lower())
            except ValueError:
                raise ValueError(f"Unknown policy action '{raw.get('action')}' in {path} (rule {i})") from None
            try:
                pattern = re.compile(str(raw["when_model_matches"]))
            except KeyError:
                raise ValueError(f"Rule {i} in {path} has no 'when_model_matches'") from None
            except re.error as e:
                raise ValueError(f"Bad pattern in {path} (rule {i}): {e}") from e
            rules.append(PolicyRule(
                pattern=pattern,
                action=action,
                params=frozenset(str(p) for p in raw.get("params") or []),
                message=raw.get("message"),
            ))
        return cls(rules, source=path)

    def rule_for(self, model_id: str) -> Optional[PolicyRule]:
        return next((r for r in self.rules if r.matches(model_id)), None)

    def apply(self, model_id: str, params: Dict[str, Any]) -> PolicyOutcome:
        """
        Filter `params` for `model_id`. Drop removes the listed keys that are
        present and explains why; reject raises ProviderClientError when any
        listed key is present. Keys a rule does not list are never touched.
        """
        params = dict(params or {})
        rule = self.rule_for(model_id)
        if rule is None or rule.action == PolicyAction.ALLOW:
            return PolicyOutcome(params)

        hit = sorted(k for k in rule.params if k in params)
        if not hit:
            return PolicyOutcome(params)
        if rule.action == PolicyAction.REJECT:
            raise ProviderClientError(rule.message or f"Model '{model_id}' does not accept params: {hit}")

        dropped = {k: params.pop(k) for k in hit}
        return PolicyOutcome(
            params,
            dropped=dropped,
            warning=rule.message or f"Dropped params {hit} not accepted by model '{model_id}'",
        )
