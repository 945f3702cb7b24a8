"""Rule metadata used to grade and title alerts (``config/rules.yaml``)."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from src.contracts.enums import Severity
from src.shared.config_loader import load_optional_yaml

log = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class RuleInfo:
    id: str
    name: str
    severity: str


class RuleCatalog:
    def __init__(self, rules: dict[str, RuleInfo], default_severity: str = Severity.MEDIUM.value) -> None:
        self._rules = dict(rules)
        self.default_severity = Severity(default_severity).value

    @classmethod
    def from_config(cls, cfg: dict[str, Any], default_severity: str = Severity.MEDIUM.value) -> RuleCatalog:
        rules: dict[str, RuleInfo] = {}
        for r in cfg.get("rules", []):
            sev = str(r.get("severity", default_severity)).lower()
            if sev not in {s.value for s in Severity}:
                log.warning("Rule %s has unknown severity '%s' — using %s", r["id"], sev, default_severity)
                sev = default_severity
            rules[r["id"]] = RuleInfo(id=r["id"], name=r.get("name", r["id"]), severity=sev)
        return cls(rules, default_severity)

    @classmethod
    def load(cls, path: str | Path, default_severity: str = Severity.MEDIUM.value) -> RuleCatalog:
        return cls.from_config(load_optional_yaml(path), default_severity)

    def get(self, rule_id: str) -> RuleInfo:
        info = self._rules.get(rule_id)
        if info is None:
            log.warning("Rule %s not in rule catalog — default severity %s", rule_id, self.default_severity)
            return RuleInfo(id=rule_id, name=rule_id, severity=self.default_severity)
        return info
