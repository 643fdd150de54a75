"""Analysis nodes.

A node declares what it ``requires`` and ``provides``; the workflow
rejects any ordering where a requirement is not provided by an earlier
node. ``run`` is pure: it reads the context and returns a new batch.
"""

from abc import ABC, abstractmethod

from sync_engine.analysis import helpers
from sync_engine.analysis.batch import AlertDraft, BatchDraft, WriteBatch
from sync_engine.analysis.context import AnalysisContext

ADMIN_TAG = "Admin"
MFA_TAG = "MFA"
PARTIAL_MFA_TAG = "Partial MFA"
STALE_TAG = "Stale"


class Node(ABC):
    name: str = ""
    requires: frozenset[str] = frozenset()
    provides: frozenset[str] = frozenset()
    alert_types: frozenset[str] = frozenset()

    @abstractmethod
    def run(self, ctx: AnalysisContext, batch: WriteBatch) -> WriteBatch:
        """Return ``batch`` extended with this node's writes."""

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} {self.name}>"


def _toggle_tag(draft: BatchDraft, entity: dict, tag: str, wanted: bool) -> None:
    present = tag in helpers.effective_tags(entity, draft)
    if wanted and not present:
        draft.add_tag(entity["id"], tag)
    elif not wanted and present:
        draft.remove_tag(entity["id"], tag)


def _display_name(entity: dict) -> str:
    return (entity.get("normalized_data") or {}).get("name") or entity["external_id"]


class TagAdminNode(Node):
    """Tags identities holding an administrative role."""

    name = "tag-admin"
    provides = frozenset({"tag:admin"})

    def run(self, ctx, batch):
        draft = batch.edit()
        for identity in helpers.identities_to_analyze(ctx):
            _toggle_tag(draft, identity, ADMIN_TAG, helpers.is_admin(ctx, identity["id"]))
        return draft.freeze()


class EvaluateMFAEnforcementNode(Node):
    """Tags MFA coverage and flags enabled identities nothing challenges.

    Coverage is full (``MFA``) or partial (``Partial MFA``, e.g. a policy
    scoped to some apps, or Security Defaults for a non-admin). Severity
    depends on the Admin tag, so this must run after TagAdminNode.
    """

    name = "evaluate-mfa-enforcement"
    requires = frozenset({"tag:admin"})
    provides = frozenset({"tag:mfa", "alerts"})
    alert_types = frozenset({"mfa_not_enforced"})

    def run(self, ctx, batch):
        draft = batch.edit()
        for identity in helpers.identities_to_analyze(ctx):
            admin = ADMIN_TAG in helpers.effective_tags(identity, draft)
            coverage = helpers.mfa_coverage(ctx, identity, admin) if helpers.is_enabled(identity) else None
            _toggle_tag(draft, identity, MFA_TAG, coverage == "full")
            _toggle_tag(draft, identity, PARTIAL_MFA_TAG, coverage == "partial")
            if coverage is not None or not helpers.is_enabled(identity):
                continue
            draft.raise_alert(AlertDraft(
                entity_id=identity["id"],
                alert_type="mfa_not_enforced",
                severity="critical" if admin else "medium",
                message=f"MFA is not enforced for {'admin ' if admin else ''}{_display_name(identity)}",
                metadata=(("admin", admin),),
            ))
        return draft.freeze()


class PolicyGapNode(Node):
    """Enabled identities no enabled conditional access policy covers.

    Security Defaults cover the whole tenant, so nothing is flagged while
    they are on.
    """

    name = "policy-gap"
    requires = frozenset({"tag:admin"})
    provides = frozenset({"alerts"})
    alert_types = frozenset({"policy_gap"})

    def run(self, ctx, batch):
        if helpers.security_defaults_enabled(ctx):
            return batch
        draft = batch.edit()
        for identity in helpers.identities_to_analyze(ctx):
            if not helpers.is_enabled(identity) or helpers.covering_policies(ctx, identity):
                continue
            admin = ADMIN_TAG in helpers.effective_tags(identity, draft)
            draft.raise_alert(AlertDraft(
                entity_id=identity["id"],
                alert_type="policy_gap",
                severity="high" if admin else "medium",
                message=f"User {_display_name(identity)} is not covered by any security policy",
                metadata=(("admin", admin),),
            ))
        return draft.freeze()


class StaleIdentityNode(Node):
    """Tags enabled identities that have not signed in for ``stale_days``."""

    name = "stale-identity"
    provides = frozenset({"tag:stale", "alerts"})
    alert_types = frozenset({"stale_user"})

    def __init__(self, stale_days: int = 90):
        self.stale_days = stale_days

    def run(self, ctx, batch):
        draft = batch.edit()
        for identity in helpers.identities_to_analyze(ctx):
            days = helpers.days_since_login(identity, ctx.loaded_at)
            stale = helpers.is_enabled(identity) and (days is None or days >= self.stale_days)
            _toggle_tag(draft, identity, STALE_TAG, stale)
            if stale:
                draft.raise_alert(AlertDraft(
                    entity_id=identity["id"],
                    alert_type="stale_user",
                    severity="low",
                    message="Never signed in" if days is None else f"No sign-in for {int(days)} days",
                    metadata=(("days_since_login", None if days is None else int(days)),),
                ))
        return draft.freeze()


class LicenseWasteNode(Node):
    """Licenses held by disabled or stale identities."""

    name = "license-waste"
    requires = frozenset({"tag:stale"})
    provides = frozenset({"alerts"})
    alert_types = frozenset({"license_waste"})

    def run(self, ctx, batch):
        draft = batch.edit()
        for identity in helpers.identities_to_analyze(ctx):
            enabled = helpers.is_enabled(identity)
            stale = STALE_TAG in helpers.effective_tags(identity, draft)
            if enabled and not stale:
                continue
            licenses = helpers.get_licenses_for_identity(ctx, identity["id"])
            if not licenses:
                continue
            names = sorted(_display_name(lic) for lic in licenses)
            draft.raise_alert(AlertDraft(
                entity_id=identity["id"],
                alert_type="license_waste",
                severity="medium" if not enabled else "low",
                message=f"{len(names)} license(s) assigned to a {'disabled' if not enabled else 'stale'} user",
                metadata=(("licenses", tuple(names)), ("reason", "disabled" if not enabled else "stale")),
            ))
        return draft.freeze()


class LicenseOveruseNode(Node):
    """Subscriptions with more seats consumed than purchased."""

    name = "license-overuse"
    provides = frozenset({"alerts"})
    alert_types = frozenset({"license_overuse"})

    def run(self, ctx, batch):
        draft = batch.edit()
        for sku in helpers.entities_to_analyze(ctx, "licenses"):
            data = sku.get("normalized_data") or {}
            consumed = int(data.get("consumed_units") or 0)
            total = int(data.get("total_units") or 0)
            if consumed <= total:
                continue
            draft.raise_alert(AlertDraft(
                entity_id=sku["id"],
                alert_type="license_overuse",
                severity="high",
                message=f"License {_display_name(sku)} is overused: {consumed} consumed / {total} available",
                metadata=(("consumed", consumed), ("total", total), ("overage", consumed - total)),
            ))
        return draft.freeze()


class EntityStateNode(Node):
    """Derives an identity's state from the alerts raised for it in this run."""

    name = "entity-state"
    requires = frozenset({"alerts"})

    SEVERITY_STATE = {"critical": "critical", "high": "critical", "medium": "warn", "low": "warn"}

    def run(self, ctx, batch):
        draft = batch.edit()
        for identity in helpers.identities_to_analyze(ctx):
            states = {self.SEVERITY_STATE.get(a.severity, "warn") for a in draft.alerts_for(identity["id"])}
            state = "critical" if "critical" in states else "warn" if states else "normal"
            if state != identity.get("state"):
                draft.set_state(identity["id"], state)
        return draft.freeze()
