"""Pure lookups over a loaded AnalysisContext. No I/O."""

from datetime import datetime
from typing import Optional, Union

from sync_engine.analysis.batch import BatchDraft, WriteBatch
from sync_engine.analysis.context import AnalysisContext, RelationshipMaps
from sync_engine.utils import parse_timestamp

ADMIN_ROLE_MARKERS = ("administrator", "admin")

_lookup = RelationshipMaps.lookup


def _resolve(ctx: AnalysisContext, ids) -> list[dict]:
    return [e for e in (ctx.get(i) for i in ids) if e is not None]


def get_groups_for_identity(ctx: AnalysisContext, identity_id: str) -> list[dict]:
    return _resolve(ctx, _lookup(ctx.relationships.identity_to_groups, identity_id))


def is_in_group(ctx: AnalysisContext, identity_id: str, group_id: str) -> bool:
    return group_id in _lookup(ctx.relationships.identity_to_groups, identity_id)


def get_roles_for_identity(ctx: AnalysisContext, identity_id: str) -> list[dict]:
    return _resolve(ctx, _lookup(ctx.relationships.identity_to_roles, identity_id))


def has_role(ctx: AnalysisContext, identity_id: str, role_id: str) -> bool:
    return role_id in _lookup(ctx.relationships.identity_to_roles, identity_id)


def is_admin(ctx: AnalysisContext, identity_id: str) -> bool:
    """True when any assigned role name marks it administrative."""
    for role in get_roles_for_identity(ctx, identity_id):
        name = ((role.get("normalized_data") or {}).get("name") or "").lower()
        if any(marker in name for marker in ADMIN_ROLE_MARKERS):
            return True
    return False


def get_licenses_for_identity(ctx: AnalysisContext, identity_id: str) -> list[dict]:
    return _resolve(ctx, _lookup(ctx.relationships.identity_to_licenses, identity_id))


def policy_applies(ctx: AnalysisContext, policy: dict, identity: dict) -> bool:
    """Applicability including all-users targeting and exclusions."""
    data = policy.get("normalized_data") or {}
    identity_id = identity["id"]
    group_externals = {g["external_id"] for g in get_groups_for_identity(ctx, identity_id)}

    if identity["external_id"] in (data.get("exclude_users") or []):
        return False
    if group_externals & set(data.get("exclude_groups") or []):
        return False
    if data.get("include_all_users"):
        return True
    if policy["id"] in _lookup(ctx.relationships.target_to_policies, identity_id):
        return True
    return any(
        policy["id"] in _lookup(ctx.relationships.target_to_policies, group_id)
        for group_id in _lookup(ctx.relationships.identity_to_groups, identity_id)
    )


def _policy_data(policy: dict) -> dict:
    return policy.get("normalized_data") or {}


def conditional_access_policies(ctx: AnalysisContext) -> list[dict]:
    """Enabled conditional access policies, excluding the Security Defaults stand-in."""
    return [
        p for p in ctx.policies
        if _policy_data(p).get("status") == "enabled" and not _policy_data(p).get("is_security_defaults")
    ]


def security_defaults_enabled(ctx: AnalysisContext) -> bool:
    return any(
        _policy_data(p).get("is_security_defaults") and _policy_data(p).get("status") == "enabled"
        for p in ctx.policies
    )


def covering_policies(ctx: AnalysisContext, identity: dict) -> list[dict]:
    """Enabled conditional access policies that apply to the identity."""
    return [p for p in conditional_access_policies(ctx) if policy_applies(ctx, p, identity)]


def enforcing_mfa_policies(ctx: AnalysisContext, identity: dict) -> list[dict]:
    """Enabled MFA-granting conditional access policies that apply to the identity."""
    return [p for p in covering_policies(ctx, identity) if _policy_data(p).get("requires_mfa")]


def mfa_coverage(ctx: AnalysisContext, identity: dict, admin: bool) -> Optional[str]:
    """``"full"``, ``"partial"`` or ``None`` when nothing requires MFA.

    A conditional access policy covers fully when it targets all cloud
    apps. Security Defaults always challenge admins but everyone else
    only on risky sign-ins.
    """
    policies = enforcing_mfa_policies(ctx, identity)
    if any(_policy_data(p).get("include_all_applications") for p in policies):
        return "full"
    if security_defaults_enabled(ctx):
        return "full" if admin else "partial"
    return "partial" if policies else None


def is_enabled(entity: dict) -> bool:
    return bool((entity.get("normalized_data") or {}).get("enabled", True))


def is_guest(entity: dict) -> bool:
    return (entity.get("normalized_data") or {}).get("type") == "guest"


def effective_tags(entity: dict, batch: Optional[Union[WriteBatch, BatchDraft]] = None) -> set[str]:
    """Source tags plus stored analysis tags plus pending batch changes."""
    tags = set((entity.get("normalized_data") or {}).get("tags") or [])
    tags |= set(entity.get("tags") or [])
    if batch is not None:
        tags |= batch.tags_added(entity["id"])
        tags -= batch.tags_removed(entity["id"])
    return tags


def entities_to_analyze(ctx: AnalysisContext, entity_type: str) -> list[dict]:
    """Changed entities of a type for incremental runs; all of them otherwise."""
    entities = ctx.of_type(entity_type)
    if ctx.changed_entity_ids is None:
        return list(entities)
    return [e for e in entities if e["id"] in ctx.changed_entity_ids]


def identities_to_analyze(ctx: AnalysisContext) -> list[dict]:
    return entities_to_analyze(ctx, "identities")


def days_since_login(identity: dict, now: datetime) -> Optional[float]:
    """Days since last sign-in, or None when the identity never signed in."""
    last = parse_timestamp((identity.get("normalized_data") or {}).get("last_login_at"))
    if last is None:
        return None
    return (now - last).total_seconds() / 86400
