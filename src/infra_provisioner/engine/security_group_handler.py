"""Security group handler implementing CRUD via the EC2 API."""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

from infra_provisioner.engine.aws_handler import AwsHandler, tag_specifications, tags_from
from infra_provisioner.resources.schema import ResourceSchema

if TYPE_CHECKING:
    from infra_provisioner.core.state import StateRecord
    from infra_provisioner.engine.handlers import EngineContext
    from infra_provisioner.resources.base import Resource

logger = logging.getLogger(__name__)

ALL_PROTOCOLS = "-1"


def normalize_rule(rule: dict[str, Any]) -> dict[str, Any]:
    """Canonical form of one rule: a single CIDR or source group per rule."""
    protocol = str(rule.get("protocol", ALL_PROTOCOLS))
    out: dict[str, Any] = {"protocol": protocol}
    if protocol == ALL_PROTOCOLS:
        out["from_port"] = 0
        out["to_port"] = 0
    else:
        out["from_port"] = int(rule["from_port"])
        out["to_port"] = int(rule.get("to_port", rule["from_port"]))
    if rule.get("source_security_group_id"):
        out["source_security_group_id"] = rule["source_security_group_id"]
    else:
        out["cidr_block"] = rule.get("cidr_block", "0.0.0.0/0")
    if rule.get("description"):
        out["description"] = rule["description"]
    return out


def _rule_key(rule: dict[str, Any]) -> str:
    return json.dumps(rule, sort_keys=True)


def rules_from_permissions(permissions: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Flatten EC2 ``IpPermissions`` into one rule per CIDR / source group."""
    rules: list[dict[str, Any]] = []
    for perm in permissions:
        base = {
            "protocol": perm.get("IpProtocol", ALL_PROTOCOLS),
            "from_port": perm.get("FromPort", 0),
            "to_port": perm.get("ToPort", 0),
        }
        for ip_range in perm.get("IpRanges", []):
            rules.append(
                normalize_rule(
                    {
                        **base,
                        "cidr_block": ip_range["CidrIp"],
                        "description": ip_range.get("Description"),
                    }
                )
            )
        for pair in perm.get("UserIdGroupPairs", []):
            rules.append(
                normalize_rule(
                    {
                        **base,
                        "source_security_group_id": pair["GroupId"],
                        "description": pair.get("Description"),
                    }
                )
            )
    return sorted(rules, key=_rule_key)


def permission_for(rule: dict[str, Any]) -> dict[str, Any]:
    rule = normalize_rule(rule)
    perm: dict[str, Any] = {"IpProtocol": rule["protocol"]}
    if rule["protocol"] != ALL_PROTOCOLS:
        perm["FromPort"] = rule["from_port"]
        perm["ToPort"] = rule["to_port"]
    extra = {"Description": rule["description"]} if "description" in rule else {}
    if "source_security_group_id" in rule:
        perm["UserIdGroupPairs"] = [{"GroupId": rule["source_security_group_id"], **extra}]
    else:
        perm["IpRanges"] = [{"CidrIp": rule["cidr_block"], **extra}]
    return perm


_DEFAULT_EGRESS = [normalize_rule({"protocol": ALL_PROTOCOLS, "cidr_block": "0.0.0.0/0"})]


class SecurityGroupHandler(AwsHandler):
    """CRUD handler for ``aws_security_group``.

    Rules are written as ``{protocol, from_port, to_port, cidr_block}`` or
    with ``source_security_group_id`` instead of ``cidr_block``. Omitting
    ``egress`` keeps AWS's default allow-all egress rule.
    """

    schema = ResourceSchema(
        kind="aws_security_group",
        required=frozenset({"name", "vpc_id"}),
        replace_only=frozenset({"name", "description", "vpc_id"}),
        updatable=frozenset({"ingress", "egress", "tags"}),
        computed=frozenset({"owner_id", "arn"}),
        compare={"ingress": "set", "egress": "set", "tags": "exact"},
        defaults={"ingress": [], "egress": _DEFAULT_EGRESS, "tags": {}},
        plan_priority=30,
    )
    not_found_codes = frozenset({"InvalidGroup.NotFound", "InvalidGroupId.Malformed"})

    def validate(self, ctx: EngineContext, desired: Resource) -> list[str]:
        errors = super().validate(ctx, desired)
        for direction in ("ingress", "egress"):
            for i, rule in enumerate(desired.attributes.get(direction) or []):
                where = f"{direction}[{i}]"
                if not isinstance(rule, dict):
                    errors.append(f"{where} must be a mapping")
                elif str(rule.get("protocol", ALL_PROTOCOLS)) != ALL_PROTOCOLS and (
                    "from_port" not in rule
                ):
                    errors.append(f"{where} needs 'from_port' for protocol {rule['protocol']}")
                elif rule != normalize_rule(rule):
                    # Stored rules are canonical; anything else would diff forever.
                    errors.append(f"{where} should be written as {normalize_rule(rule)}")
        return errors

    def describe(self, ctx: EngineContext, remote_id: str) -> dict[str, Any] | None:
        with self.errors(f"describing security group {remote_id}"):
            resp = self.client(ctx).describe_security_groups(GroupIds=[remote_id])
        groups = resp.get("SecurityGroups", [])
        if not groups:
            return None
        sg = groups[0]
        return {
            "name": sg["GroupName"],
            "description": sg.get("Description", ""),
            "vpc_id": sg.get("VpcId"),
            "owner_id": sg.get("OwnerId"),
            "arn": sg.get("SecurityGroupArn"),
            "ingress": rules_from_permissions(sg.get("IpPermissions", [])),
            "egress": rules_from_permissions(sg.get("IpPermissionsEgress", [])),
            "tags": tags_from(sg),
        }

    def _sync(
        self,
        ctx: EngineContext,
        group_id: str,
        direction: str,
        old: list[dict[str, Any]] | None,
        new: list[dict[str, Any]] | None,
    ) -> None:
        client = self.client(ctx)
        old_rules = {_rule_key(r): r for r in map(normalize_rule, old or [])}
        new_rules = {_rule_key(r): r for r in map(normalize_rule, new or [])}
        removed_keys = sorted(old_rules.keys() - new_rules.keys())
        added_keys = sorted(new_rules.keys() - old_rules.keys())
        removed = [permission_for(old_rules[k]) for k in removed_keys]
        added = [permission_for(new_rules[k]) for k in added_keys]
        revoke, authorize = (
            (client.revoke_security_group_ingress, client.authorize_security_group_ingress)
            if direction == "ingress"
            else (client.revoke_security_group_egress, client.authorize_security_group_egress)
        )
        with self.errors(f"updating {direction} rules of {group_id}"):
            if removed:
                revoke(GroupId=group_id, IpPermissions=removed)
            if added:
                authorize(GroupId=group_id, IpPermissions=added)
        logger.debug(
            "%s %s: %d rule(s) revoked, %d authorized",
            group_id,
            direction,
            len(removed),
            len(added),
        )

    def create(self, ctx: EngineContext, attributes: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        with self.errors(f"creating security group {attributes['name']}"):
            resp = self.client(ctx).create_security_group(
                GroupName=attributes["name"],
                Description=attributes.get("description") or attributes["name"],
                VpcId=attributes["vpc_id"],
                TagSpecifications=tag_specifications("security-group", attributes.get("tags")),
            )
        group_id = resp["GroupId"]
        self._sync(ctx, group_id, "ingress", [], attributes.get("ingress"))
        if "egress" in attributes:
            self._sync(ctx, group_id, "egress", _DEFAULT_EGRESS, attributes["egress"])
        return group_id, self.stored(ctx, group_id, attributes)

    def update(
        self, ctx: EngineContext, prior: StateRecord, diff: dict[str, Any]
    ) -> dict[str, Any]:
        group_id = prior.remote_id
        for direction in ("ingress", "egress"):
            if direction in diff:
                self._sync(ctx, group_id, direction, diff[direction]["from"], diff[direction]["to"])
        if "tags" in diff:
            self.update_ec2_tags(ctx, group_id, diff["tags"]["from"], diff["tags"]["to"])
        return self.stored(ctx, group_id, {})

    def delete(self, ctx: EngineContext, prior: StateRecord) -> None:
        with self.errors(f"deleting security group {prior.remote_id}"):
            self.client(ctx).delete_security_group(GroupId=prior.remote_id)
