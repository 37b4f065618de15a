"""Tests for the DB subnet group and DB instance handlers."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import pytest

from infra_provisioner.core.state import StateRecord
from infra_provisioner.engine.rds_handler import DbInstanceHandler, DbSubnetGroupHandler

if TYPE_CHECKING:
    from unittest.mock import MagicMock

    from infra_provisioner.engine.handlers import EngineContext

GROUP_ARN = "arn:aws:rds:eu-west-1:123456789012:subgrp:app-db"
DB_ARN = "arn:aws:rds:eu-west-1:123456789012:db:app-db"


def _prior(kind: str, remote_id: str, **attributes: Any) -> StateRecord:
    return StateRecord(
        address=f"{kind}.x", kind=kind, name="x", remote_id=remote_id, attributes=attributes
    )


class TestDbSubnetGroupHandler:
    @pytest.fixture(autouse=True)
    def _describe(self, aws_client: MagicMock) -> None:
        aws_client.describe_db_subnet_groups.return_value = {
            "DBSubnetGroups": [
                {
                    "DBSubnetGroupName": "app-db",
                    "DBSubnetGroupDescription": "app-db",
                    "VpcId": "vpc-1",
                    "DBSubnetGroupArn": GROUP_ARN,
                    "Subnets": [
                        {"SubnetIdentifier": "subnet-2"},
                        {"SubnetIdentifier": "subnet-1"},
                    ],
                }
            ]
        }
        aws_client.list_tags_for_resource.return_value = {
            "TagList": [{"Key": "env", "Value": "prod"}]
        }

    def test_create_uses_name_as_id(self, aws_ctx: EngineContext, aws_client: MagicMock) -> None:
        remote_id, stored = DbSubnetGroupHandler().create(
            aws_ctx,
            {"name": "app-db", "subnet_ids": ["subnet-1", "subnet-2"], "tags": {"env": "prod"}},
        )

        assert remote_id == "app-db"
        aws_client.create_db_subnet_group.assert_called_once_with(
            DBSubnetGroupName="app-db",
            DBSubnetGroupDescription="app-db",
            SubnetIds=["subnet-1", "subnet-2"],
            Tags=[{"Key": "env", "Value": "prod"}],
        )
        aws_client.list_tags_for_resource.assert_called_once_with(ResourceName=GROUP_ARN)
        assert stored["subnet_ids"] == ["subnet-1", "subnet-2"]
        assert stored["tags"] == {"env": "prod"}
        assert stored["arn"] == GROUP_ARN

    def test_update_subnets_keeps_description(
        self, aws_ctx: EngineContext, aws_client: MagicMock
    ) -> None:
        prior = _prior(
            "aws_db_subnet_group",
            "app-db",
            description="databases",
            subnet_ids=["subnet-1"],
            arn=GROUP_ARN,
        )
        DbSubnetGroupHandler().update(
            aws_ctx,
            prior,
            {
                "subnet_ids": {"from": ["subnet-1"], "to": ["subnet-1", "subnet-2"]},
                "tags": {"from": {"env": "dev"}, "to": {"team": "data"}},
            },
        )
        aws_client.modify_db_subnet_group.assert_called_once_with(
            DBSubnetGroupName="app-db",
            DBSubnetGroupDescription="databases",
            SubnetIds=["subnet-1", "subnet-2"],
        )
        aws_client.remove_tags_from_resource.assert_called_once_with(
            ResourceName=GROUP_ARN, TagKeys=["env"]
        )
        aws_client.add_tags_to_resource.assert_called_once_with(
            ResourceName=GROUP_ARN, Tags=[{"Key": "team", "Value": "data"}]
        )


@pytest.fixture
def db_client(aws_client: MagicMock) -> MagicMock:
    aws_client.describe_db_instances.return_value = {
        "DBInstances": [
            {
                "DBInstanceIdentifier": "app-db",
                "Engine": "postgres",
                "EngineVersion": "16.3",
                "DBInstanceClass": "db.t3.large",
                "AllocatedStorage": 20,
                "MasterUsername": "app",
                "DBSubnetGroup": {"DBSubnetGroupName": "app-db"},
                "VpcSecurityGroups": [{"VpcSecurityGroupId": "sg-db"}],
                "DBInstanceArn": DB_ARN,
                "Endpoint": {"Address": "app-db.example.rds.amazonaws.com", "Port": 5432},
                "DBInstanceStatus": "available",
            }
        ]
    }
    return aws_client


class TestDbInstanceHandler:
    def test_create_waits_and_keeps_password(
        self, aws_ctx: EngineContext, db_client: MagicMock
    ) -> None:
        remote_id, stored = DbInstanceHandler().create(
            aws_ctx,
            {
                "identifier": "app-db",
                "engine": "postgres",
                "instance_class": "db.t3.large",
                "allocated_storage": 20,
                "username": "app",
                "password": "s3cret",
                "db_subnet_group_name": "app-db",
            },
        )

        assert remote_id == "app-db"
        db_client.create_db_instance.assert_called_once_with(
            DBInstanceIdentifier="app-db",
            Engine="postgres",
            MasterUsername="app",
            DBSubnetGroupName="app-db",
            DBInstanceClass="db.t3.large",
            AllocatedStorage=20,
            MasterUserPassword="s3cret",
        )
        db_client.get_waiter.assert_called_once_with("db_instance_available")
        assert stored["password"] == "s3cret"
        assert stored["endpoint_port"] == 5432
        assert "final_snapshot_identifier" not in stored

    def test_deleting_instance_reads_as_gone(
        self, aws_ctx: EngineContext, db_client: MagicMock
    ) -> None:
        db_client.describe_db_instances.return_value["DBInstances"][0]["DBInstanceStatus"] = "deleting"
        assert DbInstanceHandler().read(aws_ctx, _prior("aws_db_instance", "app-db")) is None

    def test_update_applies_immediately(
        self, aws_ctx: EngineContext, db_client: MagicMock
    ) -> None:
        prior = _prior("aws_db_instance", "app-db", password="old", arn=DB_ARN)

        stored = DbInstanceHandler().update(
            aws_ctx,
            prior,
            {
                "instance_class": {"from": "db.t3.micro", "to": "db.t3.large"},
                "password": {"from": "old", "to": "new"},
            },
        )

        db_client.modify_db_instance.assert_called_once_with(
            DBInstanceIdentifier="app-db",
            ApplyImmediately=True,
            DBInstanceClass="db.t3.large",
            MasterUserPassword="new",
        )
        assert stored["password"] == "new"

    def test_tag_only_update_skips_modify(
        self, aws_ctx: EngineContext, db_client: MagicMock
    ) -> None:
        prior = _prior("aws_db_instance", "app-db", password="pw", arn=DB_ARN)
        stored = DbInstanceHandler().update(
            aws_ctx, prior, {"tags": {"from": {}, "to": {"env": "prod"}}}
        )
        db_client.modify_db_instance.assert_not_called()
        db_client.add_tags_to_resource.assert_called_once_with(
            ResourceName=DB_ARN, Tags=[{"Key": "env", "Value": "prod"}]
        )
        assert stored["password"] == "pw"

    def test_delete_without_snapshot(self, aws_ctx: EngineContext, aws_client: MagicMock) -> None:
        DbInstanceHandler().delete(aws_ctx, _prior("aws_db_instance", "app-db"))
        aws_client.delete_db_instance.assert_called_once_with(
            DBInstanceIdentifier="app-db", DeleteAutomatedBackups=True, SkipFinalSnapshot=True
        )
        aws_client.get_waiter.assert_called_once_with("db_instance_deleted")

    def test_delete_with_final_snapshot(
        self, aws_ctx: EngineContext, aws_client: MagicMock
    ) -> None:
        DbInstanceHandler().delete(
            aws_ctx, _prior("aws_db_instance", "app-db", final_snapshot_identifier="app-db-final")
        )
        aws_client.delete_db_instance.assert_called_once_with(
            DBInstanceIdentifier="app-db",
            DeleteAutomatedBackups=True,
            SkipFinalSnapshot=False,
            FinalDBSnapshotIdentifier="app-db-final",
        )
