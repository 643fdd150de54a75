"""Content hashing for change detection.

Each (integration, entity type) pair has an explicit, versioned list of
fields excluded from the digest. Exclusion applies at every nesting depth.
The policy version is part of the digest input, so changing a policy
changes every hash for that pair exactly once.
"""

import hashlib
import json
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class HashPolicy:
    version: int
    exclude_fields: frozenset[str]


# Timestamps and counters that vendors bump without a meaningful change
DEFAULT_VOLATILE_FIELDS = frozenset({
    "@odata.etag",
    "lastSeen",
    "last_seen",
    "lastSeenAt",
    "last_seen_at",
    "lastSyncDateTime",
    "lastModifiedDateTime",
    "updatedAt",
    "updated_at",
})

DEFAULT_POLICY = HashPolicy(version=1, exclude_fields=DEFAULT_VOLATILE_FIELDS)

HASH_POLICIES: dict[tuple[str, str], HashPolicy] = {
    ("microsoft-365", "identities"): HashPolicy(
        version=1,
        exclude_fields=frozenset({
            "@odata.etag",
            "lastNonInteractiveSignInDateTime",
            "lastNonInteractiveSignInRequestId",
            "onPremisesLastSyncDateTime",
        }),
    ),
    ("microsoft-365", "groups"): HashPolicy(
        version=1,
        exclude_fields=frozenset({"@odata.etag", "renewedDateTime"}),
    ),
    ("microsoft-365", "roles"): HashPolicy(version=1, exclude_fields=frozenset({"@odata.etag"})),
    ("microsoft-365", "policies"): HashPolicy(
        version=1,
        exclude_fields=frozenset({"@odata.etag", "modifiedDateTime"}),
    ),
    ("microsoft-365", "licenses"): HashPolicy(version=1, exclude_fields=frozenset({"@odata.etag"})),
    ("halopsa", "companies"): HashPolicy(
        version=1,
        exclude_fields=frozenset({"last_updated", "lastactiondate", "ticket_count"}),
    ),
    ("datto-rmm", "companies"): HashPolicy(
        version=1,
        exclude_fields=frozenset({"lastSeen", "lastAuditDate", "devicesStatus"}),
    ),
}


def get_hash_policy(integration_type: str, entity_type: str) -> HashPolicy:
    return HASH_POLICIES.get((integration_type, entity_type), DEFAULT_POLICY)


def strip_fields(value: Any, exclude: frozenset[str]) -> Any:
    """Copy of ``value`` with excluded keys removed at any depth."""
    if isinstance(value, dict):
        return {k: strip_fields(v, exclude) for k, v in value.items() if k not in exclude}
    if isinstance(value, (list, tuple)):
        return [strip_fields(v, exclude) for v in value]
    return value


def canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def compute_data_hash(record: dict[str, Any], policy: HashPolicy = DEFAULT_POLICY) -> str:
    """SHA-256 hex digest of the stable fields of a raw record."""
    stripped = strip_fields(record, policy.exclude_fields)
    digest_input = f"v{policy.version}:{canonical_json(stripped)}"
    return hashlib.sha256(digest_input.encode("utf-8")).hexdigest()
