"""Alert lifecycle: fingerprint dedupe, resolution, operator suppression."""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

from sync_engine import metrics
from sync_engine.analysis.batch import AlertDraft
from sync_engine.db.store import DocumentStore, StoreOp
from sync_engine.errors import AlertStateError, NotFoundError, WriteConflictError
from sync_engine.utils import utcnow

logger = logging.getLogger(__name__)


class AlertStatus:
    ACTIVE = "active"
    SUPPRESSED = "suppressed"
    RESOLVED = "resolved"


@dataclass
class AlertPlan:
    ops: list[StoreOp]
    created: int = 0
    refreshed: int = 0
    reopened: int = 0
    resolved: int = 0

    def summary(self) -> dict[str, int]:
        return {
            "created": self.created,
            "refreshed": self.refreshed,
            "reopened": self.reopened,
            "resolved": self.resolved,
        }


class AlertManager:
    """Deduplicates analysis alerts by fingerprint and owns suppression.

    Analysis never changes a suppressed alert's status; only the operator
    actions ``suppress``/``unsuppress`` do, each writing one audit record.
    """

    def __init__(self, store: DocumentStore):
        self.store = store

    async def plan(
        self,
        tenant_id: str,
        data_source_id: Optional[str],
        integration_type: Optional[str],
        drafts: Iterable[AlertDraft],
        alert_types: Iterable[str],
        scope_entity_ids: Optional[Iterable[str]] = None,
        now: Optional[datetime] = None,
    ) -> AlertPlan:
        """Writes that reconcile stored alerts with this run's drafts.

        Active alerts of ``alert_types`` for entities in scope that were not
        raised again are resolved.
        """
        now = now or utcnow()
        existing = await self.store.list("entity_alerts", tenant_id, filters={"data_source_id": data_source_id})
        by_fingerprint = {a["fingerprint"]: a for a in existing}
        latest = {d.fingerprint: d for d in drafts}
        plan = AlertPlan(ops=[])

        for fingerprint, draft in latest.items():
            current = by_fingerprint.get(fingerprint)
            seen = {"last_seen_at": now, "severity": draft.severity, "message": draft.message,
                    "meta": draft.metadata_dict()}
            if current is None:
                plan.ops.append(StoreOp("insert", "entity_alerts", {
                    "data_source_id": data_source_id,
                    "integration_type": integration_type,
                    "entity_id": draft.entity_id,
                    "alert_type": draft.alert_type,
                    "fingerprint": fingerprint,
                    "status": AlertStatus.ACTIVE,
                    "first_seen_at": now,
                    **seen,
                }))
                plan.created += 1
                metrics.record_alert(draft.alert_type, "created")
            elif current["status"] == AlertStatus.RESOLVED:
                plan.ops.append(StoreOp("patch", "entity_alerts",
                                        {**seen, "status": AlertStatus.ACTIVE, "resolved_at": None},
                                        id=current["id"]))
                plan.reopened += 1
                metrics.record_alert(draft.alert_type, "reopened")
            else:
                # Active or suppressed: refresh only, status untouched
                plan.ops.append(StoreOp("patch", "entity_alerts", seen, id=current["id"]))
                plan.refreshed += 1

        types = set(alert_types)
        scope = set(scope_entity_ids) if scope_entity_ids is not None else None
        for alert in existing:
            if (
                alert["status"] == AlertStatus.ACTIVE
                and alert["alert_type"] in types
                and alert["fingerprint"] not in latest
                and (scope is None or alert["entity_id"] in scope)
            ):
                plan.ops.append(StoreOp("patch", "entity_alerts",
                                        {"status": AlertStatus.RESOLVED, "resolved_at": now}, id=alert["id"]))
                plan.resolved += 1
                metrics.record_alert(alert["alert_type"], "resolved")

        logger.debug(f"Alert plan for {tenant_id}/{data_source_id}: {plan.summary()}")
        return plan

    async def get(self, alert_id: str, tenant_id: str) -> dict:
        alert = await self.store.get("entity_alerts", tenant_id, alert_id)
        if alert is None:
            raise NotFoundError(f"Alert {alert_id} not found")
        return alert

    def _audit(self, action: str, alert: dict, user_id: Optional[str], details: dict) -> StoreOp:
        return StoreOp("insert", "audit_log", {
            "user_id": user_id,
            "action": action,
            "target_type": "entity_alerts",
            "target_id": alert["id"],
            "details": {"alert_type": alert["alert_type"], "entity_id": alert["entity_id"], **details},
        })

    async def _transition(self, tenant_id: str, alert: dict, expected: str, changes: dict, audit: StoreOp) -> None:
        """Patch only while the row still holds ``expected``; a concurrent operator wins otherwise."""
        try:
            await self.store.apply_batch(tenant_id, [
                StoreOp("patch", "entity_alerts", changes, id=alert["id"], expect={"status": expected}),
                audit,
            ])
        except WriteConflictError as e:
            raise AlertStateError(f"Alert {alert['id']} changed status concurrently; expected {expected}") from e

    async def suppress(
        self,
        alert_id: str,
        tenant_id: str,
        user_id: Optional[str],
        reason: Optional[str] = None,
        until: Optional[datetime] = None,
    ) -> dict:
        """active -> suppressed, plus one audit record, in one transaction."""
        alert = await self.get(alert_id, tenant_id)
        if alert["status"] != AlertStatus.ACTIVE:
            raise AlertStateError(f"Alert {alert_id} is {alert['status']}; only active alerts can be suppressed")

        now = utcnow()
        changes = {
            "status": AlertStatus.SUPPRESSED,
            "suppressed_by": user_id,
            "suppressed_at": now,
            "suppression_reason": reason,
            "suppressed_until": until,
        }
        await self._transition(tenant_id, alert, AlertStatus.ACTIVE, changes, self._audit("alert.suppress", alert, user_id, {
            "reason": reason,
            "until": until.isoformat() if until else None,
        }))
        metrics.record_alert(alert["alert_type"], "suppressed")
        logger.info(f"Alert {alert_id} suppressed by {user_id}")
        return {**alert, **changes}

    async def unsuppress(self, alert_id: str, tenant_id: str, user_id: Optional[str], reason: Optional[str] = None) -> dict:
        """suppressed -> active, plus one audit record, in one transaction."""
        alert = await self.get(alert_id, tenant_id)
        if alert["status"] != AlertStatus.SUPPRESSED:
            raise AlertStateError(f"Alert {alert_id} is {alert['status']}; only suppressed alerts can be unsuppressed")

        changes = {
            "status": AlertStatus.ACTIVE,
            "suppressed_by": None,
            "suppressed_at": None,
            "suppression_reason": None,
            "suppressed_until": None,
        }
        await self._transition(tenant_id, alert, AlertStatus.SUPPRESSED, changes, self._audit("alert.unsuppress", alert, user_id, {
            "reason": reason,
            "previous_reason": alert.get("suppression_reason"),
        }))
        metrics.record_alert(alert["alert_type"], "unsuppressed")
        logger.info(f"Alert {alert_id} unsuppressed by {user_id}")
        return {**alert, **changes}
