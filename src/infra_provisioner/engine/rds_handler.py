"""DB subnet group and DB instance handlers (RDS API)."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from infra_provisioner.engine.aws_handler import AwsHandler, drop_none, tag_list
from infra_provisioner.resources.schema import ResourceSchema

if TYPE_CHECKING:
    from collections.abc import Mapping

    from infra_provisioner.core.state import StateRecord
    from infra_provisioner.engine.handlers import EngineContext

logger = logging.getLogger(__name__)


class RdsHandler(AwsHandler):
    """RDS tags are addressed by ARN rather than by resource id."""

    service = "rds"

    def read_tags(self, ctx: EngineContext, arn: str | None) -> dict[str, str]:
        if not arn:
            return {}
        with self.errors(f"listing tags of {arn}"):
            tags = self.client(ctx).list_tags_for_resource(ResourceName=arn).get("TagList", [])
        return {t["Key"]: t["Value"] for t in tags}

    def update_tags(
        self,
        ctx: EngineContext,
        arn: str,
        old: Mapping[str, str] | None,
        new: Mapping[str, str] | None,
    ) -> None:
        old = dict(old or {})
        new = dict(new or {})
        client = self.client(ctx)
        removed = sorted(old.keys() - new.keys())
        changed = {k: v for k, v in new.items() if old.get(k) != v}
        with self.errors(f"tagging {arn}"):
            if removed:
                client.remove_tags_from_resource(ResourceName=arn, TagKeys=removed)
            if changed:
                client.add_tags_to_resource(ResourceName=arn, Tags=tag_list(changed))


class DbSubnetGroupHandler(RdsHandler):
    """CRUD handler for ``aws_db_subnet_group``. The remote id is the group name."""

    schema = ResourceSchema(
        kind="aws_db_subnet_group",
        required=frozenset({"name", "subnet_ids"}),
        replace_only=frozenset({"name"}),
        updatable=frozenset({"description", "subnet_ids", "tags"}),
        computed=frozenset({"arn", "vpc_id"}),
        compare={"subnet_ids": "set", "tags": "exact"},
        defaults={"tags": {}},
        plan_priority=40,
    )
    not_found_codes = frozenset({"DBSubnetGroupNotFoundFault"})

    def describe(self, ctx: EngineContext, remote_id: str) -> dict[str, Any] | None:
        with self.errors(f"describing DB subnet group {remote_id}"):
            groups = (
                self.client(ctx)
                .describe_db_subnet_groups(DBSubnetGroupName=remote_id)
                .get("DBSubnetGroups", [])
            )
        if not groups:
            return None
        group = groups[0]
        arn = group.get("DBSubnetGroupArn")
        return {
            "name": group["DBSubnetGroupName"],
            "description": group.get("DBSubnetGroupDescription", ""),
            "subnet_ids": sorted(s["SubnetIdentifier"] for s in group.get("Subnets", [])),
            "vpc_id": group.get("VpcId"),
            "arn": arn,
            "tags": self.read_tags(ctx, arn),
        }

    def create(self, ctx: EngineContext, attributes: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        name = attributes["name"]
        with self.errors(f"creating DB subnet group {name}"):
            self.client(ctx).create_db_subnet_group(
                DBSubnetGroupName=name,
                DBSubnetGroupDescription=attributes.get("description") or name,
                SubnetIds=list(attributes["subnet_ids"]),
                Tags=tag_list(attributes.get("tags")),
            )
        return name, self.stored(ctx, name, attributes)

    def update(
        self, ctx: EngineContext, prior: StateRecord, diff: dict[str, Any]
    ) -> dict[str, Any]:
        name = prior.remote_id
        if "description" in diff or "subnet_ids" in diff:
            # ModifyDBSubnetGroup replaces both fields, so unchanged ones are resent.
            merged = {**prior.attributes, **{k: v["to"] for k, v in diff.items()}}
            with self.errors(f"modifying DB subnet group {name}"):
                self.client(ctx).modify_db_subnet_group(
                    DBSubnetGroupName=name,
                    DBSubnetGroupDescription=merged.get("description") or name,
                    SubnetIds=list(merged.get("subnet_ids") or []),
                )
        if "tags" in diff and prior.attributes.get("arn"):
            self.update_tags(ctx, prior.attributes["arn"], diff["tags"]["from"], diff["tags"]["to"])
        return self.stored(ctx, name, {})

    def delete(self, ctx: EngineContext, prior: StateRecord) -> None:
        with self.errors(f"deleting DB subnet group {prior.remote_id}"):
            self.client(ctx).delete_db_subnet_group(DBSubnetGroupName=prior.remote_id)


# Desired attribute -> ModifyDBInstance / CreateDBInstance parameter.
_MODIFIABLE = {
    "instance_class": "DBInstanceClass",
    "allocated_storage": "AllocatedStorage",
    "engine_version": "EngineVersion",
    "password": "MasterUserPassword",
    "vpc_security_group_ids": "VpcSecurityGroupIds",
    "multi_az": "MultiAZ",
    "backup_retention_period": "BackupRetentionPeriod",
}


class DbInstanceHandler(RdsHandler):
    """CRUD handler for ``aws_db_instance``. The remote id is the DB identifier.

    ``password`` cannot be read back and is tracked from the last apply.
    ``final_snapshot_identifier`` is only used on delete; without it the
    instance is deleted without a final snapshot.
    """

    schema = ResourceSchema(
        kind="aws_db_instance",
        required=frozenset(
            {"identifier", "engine", "instance_class", "allocated_storage", "username", "password"}
        ),
        replace_only=frozenset(
            {"identifier", "engine", "username", "db_name", "db_subnet_group_name"}
        ),
        updatable=frozenset({*_MODIFIABLE, "final_snapshot_identifier", "tags"}),
        computed=frozenset({"arn", "endpoint_address", "endpoint_port", "status"}),
        sensitive=frozenset({"password"}),
        compare={"vpc_security_group_ids": "set", "tags": "exact"},
        defaults={"tags": {}},
        plan_priority=70,
    )
    not_found_codes = frozenset({"DBInstanceNotFound", "DBInstanceNotFoundFault"})
    write_only = frozenset({"password", "final_snapshot_identifier"})

    def describe(self, ctx: EngineContext, remote_id: str) -> dict[str, Any] | None:
        with self.errors(f"describing DB instance {remote_id}"):
            dbs = (
                self.client(ctx)
                .describe_db_instances(DBInstanceIdentifier=remote_id)
                .get("DBInstances", [])
            )
        if not dbs:
            return None
        db = dbs[0]
        if db.get("DBInstanceStatus") == "deleting":
            return None
        endpoint = db.get("Endpoint") or {}
        attrs: dict[str, Any] = {
            "identifier": db["DBInstanceIdentifier"],
            "engine": db["Engine"],
            "engine_version": db.get("EngineVersion"),
            "instance_class": db["DBInstanceClass"],
            "allocated_storage": db.get("AllocatedStorage"),
            "username": db.get("MasterUsername"),
            "multi_az": db.get("MultiAZ", False),
            "backup_retention_period": db.get("BackupRetentionPeriod"),
            "db_subnet_group_name": (db.get("DBSubnetGroup") or {}).get("DBSubnetGroupName"),
            "vpc_security_group_ids": sorted(
                g["VpcSecurityGroupId"] for g in db.get("VpcSecurityGroups", [])
            ),
            "arn": db.get("DBInstanceArn"),
            "endpoint_address": endpoint.get("Address"),
            "endpoint_port": endpoint.get("Port"),
            "status": db.get("DBInstanceStatus"),
            "tags": {t["Key"]: t["Value"] for t in db.get("TagList", [])},
        }
        if db.get("DBName"):
            attrs["db_name"] = db["DBName"]
        return attrs

    def create(self, ctx: EngineContext, attributes: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        identifier = attributes["identifier"]
        kwargs = drop_none(
            DBInstanceIdentifier=identifier,
            Engine=attributes["engine"],
            MasterUsername=attributes["username"],
            DBName=attributes.get("db_name"),
            DBSubnetGroupName=attributes.get("db_subnet_group_name"),
            **{api: attributes.get(attr) for attr, api in _MODIFIABLE.items()},
        )
        if attributes.get("tags"):
            kwargs["Tags"] = tag_list(attributes["tags"])
        with self.errors(f"creating DB instance {identifier}"):
            self.client(ctx).create_db_instance(**kwargs)
        self.wait(ctx, "db_instance_available", DBInstanceIdentifier=identifier)
        return identifier, self.stored(ctx, identifier, attributes)

    def update(
        self, ctx: EngineContext, prior: StateRecord, diff: dict[str, Any]
    ) -> dict[str, Any]:
        identifier = prior.remote_id
        modify = {_MODIFIABLE[k]: v["to"] for k, v in diff.items() if k in _MODIFIABLE}
        if modify:
            with self.errors(f"modifying DB instance {identifier}"):
                self.client(ctx).modify_db_instance(
                    DBInstanceIdentifier=identifier, ApplyImmediately=True, **modify
                )
            self.wait(ctx, "db_instance_available", DBInstanceIdentifier=identifier)
        if "tags" in diff and prior.attributes.get("arn"):
            self.update_tags(ctx, prior.attributes["arn"], diff["tags"]["from"], diff["tags"]["to"])

        carried = dict(prior.attributes)
        for key in self.write_only:
            if key in diff:
                carried[key] = diff[key]["to"]
        return self.stored(ctx, identifier, carried)

    def delete(self, ctx: EngineContext, prior: StateRecord) -> None:
        identifier = prior.remote_id
        snapshot = prior.attributes.get("final_snapshot_identifier")
        kwargs: dict[str, Any] = {"DeleteAutomatedBackups": True}
        if snapshot:
            kwargs.update(SkipFinalSnapshot=False, FinalDBSnapshotIdentifier=snapshot)
        else:
            kwargs["SkipFinalSnapshot"] = True
        with self.errors(f"deleting DB instance {identifier}"):
            self.client(ctx).delete_db_instance(DBInstanceIdentifier=identifier, **kwargs)
        self.wait(ctx, "db_instance_deleted", DBInstanceIdentifier=identifier)
