"""
conditions.py — Decide whether an alert fires for a query result.

═══════════════════════════════════════════════════════════════════════════
RULES
═══════════════════════════════════════════════════════════════════════════

    condition   alert_above_goal   fires when
    ─────────   ────────────────   ─────────────────────────
    rows        (None)             result has at least one row
    goal        True               metric ≥ goal
    goal        False              metric <  goal

The metric is the last value of the last row; the goal line comes with the
result. A goal alert whose result carries no numeric metric or no goal
does not fire.

Empty results never fire. ``skip_if_empty`` only decides how that outcome
is logged: with the flag set an empty result is an expected quiet outcome,
without it the empty result is reported at INFO so the owner can see the
query produced nothing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from notifier.app.alerts.models import Alert, AlertCondition, QueryResult
from notifier.app.core.errors import ValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Decision:
    fire: bool
    reason: str


class ConditionEvaluator:
    """Stateless; one instance is shared by every firing."""

    def evaluate(self, alert: Alert, result: QueryResult) -> Decision:
        if result.is_empty:
            if alert.skip_if_empty:
                logger.debug("Alert %s: empty result, skipped", alert.id)
            else:
                logger.info("Alert %s: query returned no rows", alert.id)
            return Decision(False, "empty result")

        if alert.condition == AlertCondition.ROWS:
            return Decision(True, f"{len(result.rows)} rows")

        metric, goal = result.metric, result.goal
        if metric is None or goal is None:
            logger.warning(
                "Alert %s: goal condition without metric/goal (metric=%s goal=%s)",
                alert.id, metric, goal,
            )
            return Decision(False, "no metric or goal")

        if alert.alert_above_goal:
            fire = metric >= goal
            reason = f"metric {metric:g} {'meets' if fire else 'is below'} goal {goal:g}"
        else:
            fire = metric < goal
            reason = f"metric {metric:g} {'is below' if fire else 'meets'} goal {goal:g}"
        return Decision(fire, reason)

    def should_fire(self, alert: Alert, result: QueryResult) -> bool:
        return self.evaluate(alert, result).fire


def validate_condition(condition: AlertCondition, alert_above_goal: Optional[bool]) -> None:
    """``alert_above_goal`` is required for goal alerts and forbidden otherwise."""
    if condition == AlertCondition.GOAL and alert_above_goal is None:
        raise ValidationError(
            "alert_above_goal is required for goal alerts",
            field="alert_above_goal",
        )
    if condition != AlertCondition.GOAL and alert_above_goal is not None:
        raise ValidationError(
            "alert_above_goal is only allowed for goal alerts",
            field="alert_above_goal",
        )


def describe_condition(alert: Alert) -> str:
    """Wording used in notifications: 'has any results' / 'meets its goal' / ..."""
    if alert.condition == AlertCondition.ROWS:
        return "has any results"
    return "meets its goal" if alert.alert_above_goal else "goes below its goal"
