from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

from adsync.aggregator import AggregateScope, Aggregator
from adsync.notify.telegram import LogNotifier, NotificationSink
from adsync.util import local_date, to_utc_iso, utc_now

logger = logging.getLogger(__name__)


METRIC_TYPES = ("daily_spend", "monthly_spend", "cpc", "ctr", "cpm", "budget_utilization")
CONDITIONS = ("greater_than", "less_than")

# Lifetime budgets are measured against all spend up to the evaluated day.
_LIFETIME_START = "2000-01-01"


class AlertRuleError(ValueError):
    """A rule that cannot be evaluated (unknown metric/condition, missing scope)."""


@dataclass(frozen=True)
class RuleOutcome:
    rule_id: str
    outcome: str  # triggered|updated|resolved|ok|inactive|error
    value: float | None = None
    trigger_id: str | None = None
    detail: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "outcome": self.outcome,
            "value": self.value,
            "trigger_id": self.trigger_id,
            "detail": self.detail,
        }


@dataclass
class EvaluationReport:
    results: list[RuleOutcome] = field(default_factory=list)

    def count(self, outcome: str) -> int:
        return sum(1 for r in self.results if r.outcome == outcome)

    def to_dict(self) -> dict[str, Any]:
        return {
            "evaluated": len(self.results),
            "triggered": self.count("triggered"),
            "resolved": self.count("resolved"),
            "results": [r.to_dict() for r in self.results],
        }


def is_breached(condition: str, value: float, threshold: float) -> bool:
    if condition == "greater_than":
        return value > threshold
    if condition == "less_than":
        return value < threshold
    raise AlertRuleError(f"Unknown condition: {condition}")


class AlertEvaluator:
    """
    Compares aggregated values against alert rules and keeps one open trigger per breach.

    Per rule: not breached + condition true -> open a trigger and notify;
    still breached -> refresh current_amount only; condition false -> resolve.
    The open-trigger uniqueness is enforced by a partial unique index, so a
    concurrent evaluator losing the insert race sees a plain re-breach.
    """

    def __init__(
        self,
        repo,
        *,
        aggregator: Aggregator | None = None,
        notifier: NotificationSink | None = None,
        timezone: str = "UTC",
        renotify: bool = False,
        notify_timeout: float = 5.0,
    ):
        self.repo = repo
        self.aggregator = aggregator or Aggregator(repo)
        self.notifier = notifier or LogNotifier()
        self.timezone = timezone
        self.renotify = renotify
        self.notify_timeout = float(notify_timeout)

    def _scope(self, rule: dict[str, Any], date_from: str, date_to: str) -> AggregateScope:
        return AggregateScope(
            date_from=date_from,
            date_to=date_to,
            account_id=rule.get("account_id") or None,
            provider=rule.get("provider") or None,
            campaign_id=rule.get("campaign_id") or None,
            user_id=rule.get("user_id") or None,
        )

    def current_value(self, rule: dict[str, Any], day: date) -> float:
        """Resolve the rule's scope for `day` and read its metric through the aggregator."""
        metric_type = str(rule.get("metric_type") or "")
        d = day.isoformat()

        if metric_type == "monthly_spend":
            m = self.aggregator.aggregate(self._scope(rule, day.replace(day=1).isoformat(), d))
            return float(m.spend)
        if metric_type in {"daily_spend", "cpc", "ctr", "cpm"}:
            m = self.aggregator.aggregate(self._scope(rule, d, d))
            if metric_type == "daily_spend":
                return float(m.spend)
            if metric_type == "ctr":
                # Thresholds for CTR are entered as percentages.
                return float(m.ctr) * 100.0
            return float(getattr(m, metric_type))
        if metric_type == "budget_utilization":
            return self._budget_utilization(rule, d)
        raise AlertRuleError(f"Unknown metric type: {metric_type}")

    def _budget_utilization(self, rule: dict[str, Any], d: str) -> float:
        campaign_id = rule.get("campaign_id")
        if not campaign_id:
            raise AlertRuleError("budget_utilization rules need a campaign_id")
        camp = self.repo.get_campaign(campaign_id, provider=rule.get("provider") or None)
        if not camp:
            raise AlertRuleError(f"Unknown campaign: {campaign_id}")
        daily = float(camp.get("daily_budget") or 0)
        lifetime = float(camp.get("lifetime_budget") or 0)
        if daily > 0:
            spend = self.aggregator.aggregate(self._scope(rule, d, d)).spend
            return spend / daily * 100.0
        if lifetime > 0:
            spend = self.aggregator.aggregate(self._scope(rule, _LIFETIME_START, d)).spend
            return spend / lifetime * 100.0
        raise AlertRuleError(f"Campaign {campaign_id} has no budget")

    async def _notify(self, rule: dict[str, Any], message: str) -> None:
        # Bounded so a slow sink cannot hold up the remaining rules.
        try:
            await asyncio.wait_for(
                self.notifier.notify(str(rule["user_id"]), str(rule["id"]), message),
                timeout=self.notify_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("alert notification for rule %s timed out after %gs", rule["id"], self.notify_timeout)
        except Exception as e:  # noqa: BLE001
            logger.warning("alert notification for rule %s failed: %s", rule["id"], e)

    def _message(self, rule: dict[str, Any], value: float) -> str:
        op = ">" if rule.get("condition") == "greater_than" else "<"
        return f"{rule.get('name')}: {rule.get('metric_type')} {value:.2f} {op} {float(rule['threshold']):.2f}"

    def _deactivated(self, rule_id: str, now: datetime) -> RuleOutcome:
        # A disabled rule closes its open trigger so re-enabling starts clean.
        open_trigger = self.repo.get_open_trigger(rule_id)
        if open_trigger is None:
            return RuleOutcome(rule_id=rule_id, outcome="inactive")
        self.repo.resolve_trigger(open_trigger["id"], resolved_at=to_utc_iso(now))
        logger.info("alert rule %s disabled, open trigger resolved", rule_id)
        return RuleOutcome(rule_id=rule_id, outcome="inactive", trigger_id=open_trigger["id"])

    async def evaluate_rule(self, rule: dict[str, Any], value: float, now: datetime) -> RuleOutcome:
        """Apply one state transition for a precomputed metric value."""
        rule_id = str(rule["id"])
        if not int(rule.get("is_active", 1)):
            return self._deactivated(rule_id, now)

        threshold = float(rule["threshold"])
        breached = is_breached(str(rule.get("condition") or ""), value, threshold)
        now_iso = to_utc_iso(now)
        open_trigger = self.repo.get_open_trigger(rule_id)

        if not breached:
            if open_trigger:
                self.repo.resolve_trigger(open_trigger["id"], resolved_at=now_iso)
                logger.info("alert rule %s resolved at %.2f", rule_id, value)
                return RuleOutcome(rule_id=rule_id, outcome="resolved", value=value, trigger_id=open_trigger["id"])
            return RuleOutcome(rule_id=rule_id, outcome="ok", value=value)

        if open_trigger is None:
            trigger_id = self.repo.open_trigger(
                rule_id=rule_id,
                current_amount=value,
                threshold=threshold,
                triggered_at=now_iso,
            )
            if trigger_id is not None:
                logger.info("alert rule %s triggered at %.2f", rule_id, value)
                await self._notify(rule, self._message(rule, value))
                return RuleOutcome(rule_id=rule_id, outcome="triggered", value=value, trigger_id=trigger_id)
            # Lost the insert race: another evaluator opened it first.
            open_trigger = self.repo.get_open_trigger(rule_id)
            if open_trigger is None:
                return RuleOutcome(rule_id=rule_id, outcome="error", value=value, detail="trigger insert conflict")

        self.repo.update_trigger_amount(open_trigger["id"], value)
        if self.renotify:
            await self._notify(rule, self._message(rule, value))
        return RuleOutcome(rule_id=rule_id, outcome="updated", value=value, trigger_id=open_trigger["id"])

    async def evaluate(self, now: datetime | None = None, day: date | None = None) -> EvaluationReport:
        """
        Evaluate every rule. `day` sets the granularity for per-day metrics;
        it defaults to `now`'s date in the configured timezone.
        """
        now = now or utc_now()
        day = day or local_date(now, self.timezone)
        report = EvaluationReport()
        for rule in self.repo.list_alert_rules():
            rule_id = str(rule["id"])
            if not int(rule.get("is_active", 1)):
                report.results.append(self._deactivated(rule_id, now))
                continue
            try:
                value = self.current_value(rule, day)
                report.results.append(await self.evaluate_rule(rule, value, now))
            except AlertRuleError as e:
                logger.warning("alert rule %s skipped: %s", rule_id, e)
                report.results.append(RuleOutcome(rule_id=rule_id, outcome="error", detail=str(e)))
        return report

    def evaluate_sync(self, now: datetime | None = None, day: date | None = None) -> EvaluationReport:
        return asyncio.run(self.evaluate(now, day))


def validate_rule(metric_type: str, condition: str, threshold: float, campaign_id: str | None = None) -> None:
    if metric_type not in METRIC_TYPES:
        raise AlertRuleError(f"Unknown metric type: {metric_type} (expected one of {', '.join(METRIC_TYPES)})")
    if condition not in CONDITIONS:
        raise AlertRuleError(f"Unknown condition: {condition} (expected one of {', '.join(CONDITIONS)})")
    if threshold < 0:
        raise AlertRuleError("threshold must be >= 0")
    if metric_type == "budget_utilization" and not campaign_id:
        raise AlertRuleError("budget_utilization rules need a campaign_id")
