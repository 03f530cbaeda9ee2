from __future__ import annotations

import copy
from dataclasses import asdict, dataclass
from typing import Any, Dict

from database import get_active_policy, upsert_policy


DEFAULT_POLICY_NAME = "Baseline Rota Rules"

SCHEDULING_RULES: Dict[str, Any] = {
    "weekly_hour_limit": 36,
    "min_competent_staff": 1,
    "rest_period_night_to_day_hours": 48,
    "max_consecutive_weekends": 1,
}

BASELINE_POLICY: Dict[str, Any] = {
    "name": DEFAULT_POLICY_NAME,
    "scheduling_rules": SCHEDULING_RULES,
}


@dataclass(frozen=True)
class RuleLimits:
    weekly_hour_limit: float = 36.0
    min_competent_staff: int = 1
    rest_period_hours: float = 48.0
    max_consecutive_weekends: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def build_default_policy() -> Dict[str, Any]:
    """Return a deepcopy so callers can mutate the policy safely."""
    return copy.deepcopy(BASELINE_POLICY)


def ensure_default_policy(session_factory) -> None:
    """Seed the baseline policy exactly once so the rules engine has limits to read."""

    with session_factory() as session:
        if get_active_policy(session):
            return
        baseline = build_default_policy()
        name = baseline.get("name", DEFAULT_POLICY_NAME)
        params = {key: value for key, value in baseline.items() if key != "name"}
        upsert_policy(session, name, params, edited_by="system")


def load_active_policy(conn) -> Dict:
    """Return the active policy payload as a dict."""
    if conn is None:
        return {}
    if callable(conn):
        with conn() as session:
            policy = get_active_policy(session)
            return _normalize_policy(policy.params_dict() if policy else {})
    policy = get_active_policy(conn)
    return _normalize_policy(policy.params_dict() if policy else {})


def _normalize_policy(policy: Dict) -> Dict:
    """Fill any missing scheduling rule with its baseline value."""
    if not isinstance(policy, dict):
        return {}
    normalized = copy.deepcopy(policy)
    rules_cfg = normalized.get("scheduling_rules")
    if not isinstance(rules_cfg, dict):
        rules_cfg = {}
    merged = copy.deepcopy(SCHEDULING_RULES)
    merged.update(rules_cfg)
    normalized["scheduling_rules"] = merged
    return normalized


def _float_setting(cfg: Dict[str, Any], key: str, minimum: float = 0.0) -> float:
    try:
        value = float(cfg.get(key, SCHEDULING_RULES[key]))
    except (TypeError, ValueError):
        value = float(SCHEDULING_RULES[key])
    return max(minimum, value)


def _int_setting(cfg: Dict[str, Any], key: str, minimum: int = 0) -> int:
    try:
        value = int(cfg.get(key, SCHEDULING_RULES[key]))
    except (TypeError, ValueError):
        value = int(SCHEDULING_RULES[key])
    return max(minimum, value)


def scheduling_limits(policy: Dict | None) -> RuleLimits:
    """Resolve the limits the rule engine runs with from a policy payload."""
    cfg = (policy or {}).get("scheduling_rules") if isinstance(policy, dict) else None
    if not isinstance(cfg, dict):
        cfg = {}
    return RuleLimits(
        weekly_hour_limit=_float_setting(cfg, "weekly_hour_limit"),
        min_competent_staff=_int_setting(cfg, "min_competent_staff"),
        rest_period_hours=_float_setting(cfg, "rest_period_night_to_day_hours"),
        max_consecutive_weekends=_int_setting(cfg, "max_consecutive_weekends", minimum=1),
    )
