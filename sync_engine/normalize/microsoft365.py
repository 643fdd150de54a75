"""Microsoft 365 normalizers."""

from typing import Any

from sync_engine.normalize.base import Normalizer, as_id_list

DIRECTORY_ROLE_TYPE = "#microsoft.graph.directoryRole"
GROUP_TYPE = "#microsoft.graph.group"

# Conditional access pseudo-targets that are not object ids
SPECIAL_TARGETS = {"All", "None", "GuestsOrExternalUsers"}

SERVICE_ACCOUNT_PREFIXES = ("svc", "svc-", "svc_", "service", "noreply", "no-reply")


class IdentityNormalizer(Normalizer):
    entity_type = "identities"

    def normalize(self, record: dict[str, Any]) -> dict[str, Any]:
        self.require(record, "id")
        enabled = bool(record.get("accountEnabled", True))
        is_guest = (record.get("userType") or "").lower() == "guest"
        upn = record.get("userPrincipalName") or ""

        group_ids, role_ids = [], []
        for membership in record.get("memberOf") or []:
            if not isinstance(membership, dict) or not membership.get("id"):
                continue
            if membership.get("@odata.type") == DIRECTORY_ROLE_TYPE:
                role_ids.append(str(membership["id"]))
            elif membership.get("@odata.type", GROUP_TYPE) == GROUP_TYPE:
                group_ids.append(str(membership["id"]))

        tags = []
        if is_guest:
            tags.append("Guest")
        if not enabled:
            tags.append("Disabled")
        if upn.lower().startswith(SERVICE_ACCOUNT_PREFIXES):
            tags.append("Service")

        sign_in = record.get("signInActivity") or {}
        return {
            "name": record.get("displayName") or upn,
            "email": record.get("mail") or upn,
            "username": upn,
            "enabled": enabled,
            "type": "guest" if is_guest else "member",
            "tags": tags,
            "group_ids": group_ids,
            "role_ids": role_ids,
            "license_ids": [
                str(lic["skuId"]) for lic in record.get("assignedLicenses") or [] if lic.get("skuId")
            ],
            "last_login_at": sign_in.get("lastSignInDateTime"),
            "created_at": record.get("createdDateTime"),
        }


class GroupNormalizer(Normalizer):
    entity_type = "groups"

    def normalize(self, record: dict[str, Any]) -> dict[str, Any]:
        self.require(record, "id")
        group_types = record.get("groupTypes") or []
        if "Unified" in group_types:
            kind = "microsoft365"
        elif record.get("securityEnabled"):
            kind = "security"
        else:
            kind = "distribution"
        return {
            "name": record.get("displayName") or record["id"],
            "description": record.get("description"),
            "email": record.get("mail"),
            "type": kind,
            "member_ids": as_id_list(record.get("members")),
        }


class RoleNormalizer(Normalizer):
    entity_type = "roles"

    def normalize(self, record: dict[str, Any]) -> dict[str, Any]:
        self.require(record, "id")
        return {
            "name": record.get("displayName") or record["id"],
            "description": record.get("description"),
            "role_template_id": record.get("roleTemplateId"),
            "member_ids": as_id_list(record.get("members")),
        }


class PolicyNormalizer(Normalizer):
    """Conditional access policies and the Security Defaults stand-in."""

    entity_type = "policies"

    def normalize(self, record: dict[str, Any]) -> dict[str, Any]:
        self.require(record, "id")
        if record.get("isSecurityDefaults"):
            # Baseline MFA for every user on every app
            return {
                "name": record.get("displayName") or "Security Defaults",
                "status": record.get("state", "enabled"),
                "is_security_defaults": True,
                "requires_mfa": True,
                "include_all_users": True,
                "include_all_applications": True,
                "include_users": [],
                "exclude_users": [],
                "include_groups": [],
                "exclude_groups": [],
            }

        conditions = record.get("conditions") or {}
        users = conditions.get("users") or {}
        applications = conditions.get("applications") or {}
        grant = record.get("grantControls") or {}
        built_in = [c.lower() for c in grant.get("builtInControls") or []]
        include_users = users.get("includeUsers") or []

        def targets(values):
            return [str(v) for v in values or [] if v not in SPECIAL_TARGETS]

        return {
            "name": record.get("displayName") or record["id"],
            "status": record.get("state", "disabled"),
            "is_security_defaults": False,
            "requires_mfa": "mfa" in built_in,
            "include_all_users": "All" in include_users,
            "include_all_applications": "All" in (applications.get("includeApplications") or []),
            "include_users": targets(include_users),
            "exclude_users": targets(users.get("excludeUsers")),
            "include_groups": targets(users.get("includeGroups")),
            "exclude_groups": targets(users.get("excludeGroups")),
        }


class LicenseNormalizer(Normalizer):
    entity_type = "licenses"

    def normalize(self, record: dict[str, Any]) -> dict[str, Any]:
        self.require(record, "skuId")
        prepaid = record.get("prepaidUnits") or {}
        return {
            "name": record.get("friendlyName") or record.get("skuPartNumber") or record["skuId"],
            "sku_id": str(record["skuId"]),
            "sku_part_number": record.get("skuPartNumber"),
            "total_units": int(prepaid.get("enabled") or 0),
            "consumed_units": int(record.get("consumedUnits") or 0),
        }


NORMALIZERS = (
    IdentityNormalizer(),
    GroupNormalizer(),
    RoleNormalizer(),
    PolicyNormalizer(),
    LicenseNormalizer(),
)
