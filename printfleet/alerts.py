from __future__ import annotations

import itertools
import logging
import threading
from datetime import datetime, timedelta
from typing import Callable, Iterable

from printfleet.models import (
    DEVICE_CATEGORIES,
    SUPPLY_CATEGORIES,
    Alert,
    AlertCategory,
    AlertContext,
    AlertRule,
    AlertSeverity,
    AlertStatus,
    Device,
    DeviceStatus,
    SupplyKind,
    utc_now,
)

LOGGER = logging.getLogger(__name__)

DEFAULT_WARNING_THRESHOLD = 25.0
DEFAULT_CRITICAL_THRESHOLD = 10.0
DEFAULT_HYSTERESIS = 2.0


def alert_key(device_id: int, category: AlertCategory, kind: SupplyKind | None = None) -> str:
    key = f"{device_id}_{category.value}"
    if kind is not None:
        key += f"_{kind.value}"
    return key


def default_rules() -> list[AlertRule]:
    return [
        AlertRule(
            id=1,
            name="Low Toner Warning",
            category=AlertCategory.SUPPLY_LOW,
            default_severity=AlertSeverity.WARNING,
            warning_threshold=25.0,
            critical_threshold=10.0,
            hysteresis_margin=3.0,
            deduplication_window=timedelta(minutes=30),
        ),
        AlertRule(
            id=2,
            name="Critical Toner Level",
            category=AlertCategory.SUPPLY_CRITICAL,
            default_severity=AlertSeverity.CRITICAL,
            critical_threshold=5.0,
            hysteresis_margin=2.0,
            deduplication_window=timedelta(minutes=15),
        ),
        AlertRule(
            id=3,
            name="Device Offline",
            category=AlertCategory.DEVICE_OFFLINE,
            default_severity=AlertSeverity.CRITICAL,
            deduplication_window=timedelta(minutes=10),
        ),
        AlertRule(
            id=4,
            name="Device Error",
            category=AlertCategory.DEVICE_ERROR,
            default_severity=AlertSeverity.WARNING,
            deduplication_window=timedelta(minutes=20),
        ),
    ]


def rule_scope_rank(rule: AlertRule) -> int:
    if rule.device_id is not None:
        return 0
    if rule.site_id is not None:
        return 1
    return 2


def rule_applies(rule: AlertRule, device: Device) -> bool:
    if rule.device_id is not None and rule.device_id != device.id:
        return False
    if rule.site_id is not None and rule.site_id != device.site_id:
        return False
    return True


def evaluate_thresholds(
    rule: AlertRule, current: float, previous: float | None
) -> tuple[AlertSeverity | None, float | None]:
    """Return the breached severity and the threshold it was measured against.

    When the level dropped since the previous reading both thresholds are
    raised by the hysteresis margin before comparing.
    """
    warn = DEFAULT_WARNING_THRESHOLD if rule.warning_threshold is None else rule.warning_threshold
    crit = DEFAULT_CRITICAL_THRESHOLD if rule.critical_threshold is None else rule.critical_threshold
    hyst = DEFAULT_HYSTERESIS if rule.hysteresis_margin is None else rule.hysteresis_margin

    if previous is not None and previous > current:
        warn += hyst
        crit += hyst

    if current <= crit:
        return AlertSeverity.CRITICAL, crit
    if current <= warn:
        return AlertSeverity.WARNING, warn
    return None, None


class AlertStore:
    """Active alerts by key. At most one non-resolved alert per key."""

    def __init__(self) -> None:
        self.lock = threading.RLock()
        self._alerts: dict[str, Alert] = {}
        self._ids = itertools.count(1)

    def next_id(self) -> int:
        with self.lock:
            return next(self._ids)

    def get(self, key: str) -> Alert | None:
        with self.lock:
            return self._alerts.get(key)

    def put(self, alert: Alert) -> None:
        with self.lock:
            self._alerts[alert.key] = alert

    def remove(self, key: str) -> Alert | None:
        with self.lock:
            return self._alerts.pop(key, None)

    def find(self, alert_id: int) -> Alert | None:
        with self.lock:
            for alert in self._alerts.values():
                if alert.id == alert_id:
                    return alert
        return None

    def all(self) -> list[Alert]:
        with self.lock:
            return list(self._alerts.values())

    def __len__(self) -> int:
        with self.lock:
            return len(self._alerts)


class AlertEngine:
    """Evaluates supply readings and device state against alert rules.

    Alerts are deduplicated by key inside each rule's window: a repeat
    breach updates the existing alert in place and severity only ever
    escalates. With ``auto_resolve`` an active alert whose condition has
    cleared is resolved on the next evaluation.
    """

    def __init__(
        self,
        store: AlertStore | None = None,
        rules: Iterable[AlertRule] | None = None,
        clock: Callable[[], datetime] = utc_now,
        auto_resolve: bool = False,
    ) -> None:
        self.store = store or AlertStore()
        self.clock = clock
        self.auto_resolve = auto_resolve
        self._rules_lock = threading.Lock()
        self._rules: list[AlertRule] = list(default_rules() if rules is None else rules)

    # Rules

    def rules(self, site_id: int | None = None, device_id: int | None = None) -> list[AlertRule]:
        with self._rules_lock:
            selected = list(self._rules)
        if site_id is not None:
            selected = [rule for rule in selected if rule.site_id in (None, site_id)]
        if device_id is not None:
            selected = [rule for rule in selected if rule.device_id in (None, device_id)]
        return sorted(selected, key=lambda rule: (rule_scope_rank(rule), rule.id))

    def get_rule(self, rule_id: int) -> AlertRule | None:
        with self._rules_lock:
            return next((rule for rule in self._rules if rule.id == rule_id), None)

    def save_rule(self, rule: AlertRule) -> AlertRule:
        with self._rules_lock:
            if not rule.id:
                rule.id = max((existing.id for existing in self._rules), default=0) + 1
                self._rules.append(rule)
                LOGGER.info("Created alert rule %s (%s)", rule.id, rule.name)
                return rule
            rule.updated_at = self.clock()
            for index, existing in enumerate(self._rules):
                if existing.id == rule.id:
                    self._rules[index] = rule
                    break
            else:
                self._rules.append(rule)
            LOGGER.info("Saved alert rule %s (%s)", rule.id, rule.name)
            return rule

    def delete_rule(self, rule_id: int) -> bool:
        with self._rules_lock:
            for index, rule in enumerate(self._rules):
                if rule.id == rule_id:
                    del self._rules[index]
                    LOGGER.info("Deleted alert rule %s", rule_id)
                    return True
        return False

    def save_device_rule(self, device_id: int, kind: SupplyKind, warning: float, critical: float) -> AlertRule:
        with self._rules_lock:
            existing = next(
                (rule for rule in self._rules if rule.device_id == device_id and rule.supply_kind == kind),
                None,
            )
        if existing is None:
            rule = AlertRule(
                name=f"Device {device_id} - {kind.value} Thresholds",
                category=AlertCategory.SUPPLY_LOW,
                default_severity=AlertSeverity.WARNING,
                device_id=device_id,
                supply_kind=kind,
                warning_threshold=warning,
                critical_threshold=critical,
                hysteresis_margin=2.0,
                deduplication_window=timedelta(minutes=30),
            )
            return self.save_rule(rule)
        existing.warning_threshold = warning
        existing.critical_threshold = critical
        return self.save_rule(existing)

    def _candidate_rules(self, device: Device, categories: set[AlertCategory], kind: SupplyKind | None = None) -> list[AlertRule]:
        with self._rules_lock:
            rules = [
                rule
                for rule in self._rules
                if rule.enabled
                and rule.category in categories
                and rule_applies(rule, device)
                and (kind is None or rule.supply_kind is None or rule.supply_kind == kind)
            ]
        return sorted(rules, key=lambda rule: (rule_scope_rank(rule), rule.id))

    # Evaluation

    def evaluate(self, context: AlertContext) -> Alert | None:
        supply = context.supply
        if supply is None or context.current_value is None:
            return None

        current = context.current_value
        rules = self._candidate_rules(context.device, SUPPLY_CATEGORIES, supply.kind)
        for rule in rules:
            severity, threshold = evaluate_thresholds(rule, current, context.previous_value)
            if severity is None:
                continue
            if severity == AlertSeverity.CRITICAL:
                title = f"Critical Supply Level - {supply.kind.value}"
                description = f"{supply.kind.value} supply is critically low at {current:.1f}% (threshold: {threshold}%)"
            else:
                title = f"Low Supply Level - {supply.kind.value}"
                description = f"{supply.kind.value} supply is low at {current:.1f}% (threshold: {threshold}%)"
            device = context.device
            candidate = Alert(
                key=alert_key(device.id, rule.category, supply.kind),
                device=device,
                category=rule.category,
                severity=severity,
                rule_id=rule.id,
                title=title,
                description=description,
                supply_kind=supply.kind,
                current_level=current,
                threshold=threshold,
                metadata={
                    "vendor": device.vendor,
                    "model": device.model,
                    "location": device.location or "Unknown",
                },
            )
            return self._deduplicate(candidate, rule)

        if self.auto_resolve:
            for rule in rules:
                self._resolve_cleared(alert_key(context.device.id, rule.category, supply.kind))
        return None

    def evaluate_many(self, contexts: Iterable[AlertContext]) -> list[Alert]:
        alerts = []
        for context in contexts:
            try:
                alert = self.evaluate(context)
            except Exception:  # noqa: BLE001
                LOGGER.exception("Alert evaluation failed for device %s", context.device.id)
                continue
            if alert is not None:
                alerts.append(alert)
        return alerts

    def evaluate_device(self, device: Device, reachable: bool, status: DeviceStatus | None = None) -> list[Alert]:
        """Apply offline and error rules to one device."""
        conditions = {
            AlertCategory.DEVICE_OFFLINE: (
                not reachable,
                "Device Offline",
                f"Device {device.hostname} is not responding to status requests",
            ),
            AlertCategory.DEVICE_ERROR: (
                reachable and status == DeviceStatus.ERROR,
                "Device Error",
                f"Device {device.hostname} reported error status",
            ),
        }
        alerts = []
        seen: set[AlertCategory] = set()
        for rule in self._candidate_rules(device, DEVICE_CATEGORIES):
            if rule.category in seen:
                continue
            seen.add(rule.category)
            breached, title, description = conditions[rule.category]
            key = alert_key(device.id, rule.category)
            if not breached:
                if self.auto_resolve:
                    self._resolve_cleared(key)
                continue
            candidate = Alert(
                key=key,
                device=device,
                category=rule.category,
                severity=rule.default_severity,
                rule_id=rule.id,
                title=title,
                description=description,
            )
            alerts.append(self._deduplicate(candidate, rule))
        return alerts

    def _deduplicate(self, candidate: Alert, rule: AlertRule) -> Alert:
        with self.store.lock:
            now = self.clock()
            existing = self.store.get(candidate.key)
            if existing is not None and (
                existing.status == AlertStatus.ACKNOWLEDGED
                or now - existing.last_occurrence < rule.deduplication_window
            ):
                existing.occurrence_count += 1
                existing.last_occurrence = now
                existing.current_level = candidate.current_level
                if candidate.severity > existing.severity:
                    existing.severity = candidate.severity
                    existing.title = candidate.title
                    existing.description = candidate.description
                    existing.threshold = candidate.threshold
                LOGGER.debug("Deduplicated alert %s, occurrence count %d", existing.key, existing.occurrence_count)
                return existing

            if existing is not None:
                self.store.remove(candidate.key)
            candidate.id = self.store.next_id()
            candidate.first_occurrence = now
            candidate.last_occurrence = now
            candidate.occurrence_count = 1
            self.store.put(candidate)
        LOGGER.info("Created alert %s for device %s", candidate.key, candidate.device_id)
        return candidate

    def _resolve_cleared(self, key: str) -> None:
        with self.store.lock:
            alert = self.store.get(key)
            if alert is None or alert.status != AlertStatus.ACTIVE:
                return
            self._mark_resolved(alert, "system")
        LOGGER.info("Auto-resolved alert %s", key)

    def _mark_resolved(self, alert: Alert, who: str) -> None:
        alert.status = AlertStatus.RESOLVED
        alert.resolved_at = self.clock()
        alert.resolved_by = who
        self.store.remove(alert.key)

    # Lifecycle

    def acknowledge(self, alert_id: int, who: str) -> Alert | None:
        with self.store.lock:
            alert = self.store.find(alert_id)
            if alert is None or alert.status != AlertStatus.ACTIVE:
                return None
            alert.status = AlertStatus.ACKNOWLEDGED
            alert.acknowledged_at = self.clock()
            alert.acknowledged_by = who
        LOGGER.info("Alert %s acknowledged by %s", alert_id, who)
        return alert

    def resolve(self, alert_id: int, who: str) -> Alert | None:
        with self.store.lock:
            alert = self.store.find(alert_id)
            if alert is None or alert.status == AlertStatus.RESOLVED:
                return None
            self._mark_resolved(alert, who)
        LOGGER.info("Alert %s resolved by %s", alert_id, who)
        return alert

    def get_alert(self, alert_id: int) -> Alert | None:
        return self.store.find(alert_id)

    def active_alerts(
        self,
        site_id: int | None = None,
        device_id: int | None = None,
        min_severity: AlertSeverity | None = None,
    ) -> list[Alert]:
        alerts = [alert for alert in self.store.all() if alert.status != AlertStatus.RESOLVED]
        if site_id is not None:
            alerts = [alert for alert in alerts if alert.device.site_id == site_id]
        if device_id is not None:
            alerts = [alert for alert in alerts if alert.device_id == device_id]
        if min_severity is not None:
            alerts = [alert for alert in alerts if alert.severity >= min_severity]
        return sorted(alerts, key=lambda alert: (alert.severity, alert.last_occurrence), reverse=True)
