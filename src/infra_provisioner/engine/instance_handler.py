"""Network interface, elastic IP and instance handlers (EC2 API)."""

from __future__ import annotations

import base64
import logging
from typing import TYPE_CHECKING, Any

from infra_provisioner.engine.aws_handler import (
    AwsHandler,
    drop_none,
    tag_specifications,
    tags_from,
)
from infra_provisioner.resources.schema import ResourceSchema

if TYPE_CHECKING:
    from infra_provisioner.core.state import StateRecord
    from infra_provisioner.engine.handlers import EngineContext
    from infra_provisioner.resources.base import Resource

logger = logging.getLogger(__name__)


class NetworkInterfaceHandler(AwsHandler):
    """CRUD handler for ``aws_network_interface``."""

    schema = ResourceSchema(
        kind="aws_network_interface",
        required=frozenset({"subnet_id"}),
        replace_only=frozenset({"subnet_id", "private_ip_address"}),
        updatable=frozenset({"security_group_ids", "description", "source_dest_check", "tags"}),
        computed=frozenset({"mac_address", "vpc_id"}),
        compare={"security_group_ids": "set", "tags": "exact"},
        defaults={"description": "", "source_dest_check": True, "tags": {}},
        plan_priority=40,
    )
    not_found_codes = frozenset({"InvalidNetworkInterfaceID.NotFound"})

    def describe(self, ctx: EngineContext, remote_id: str) -> dict[str, Any] | None:
        with self.errors(f"describing network interface {remote_id}"):
            enis = (
                self.client(ctx)
                .describe_network_interfaces(NetworkInterfaceIds=[remote_id])
                .get("NetworkInterfaces", [])
            )
        if not enis:
            return None
        eni = enis[0]
        return {
            "subnet_id": eni["SubnetId"],
            "vpc_id": eni.get("VpcId"),
            "private_ip_address": eni.get("PrivateIpAddress"),
            "mac_address": eni.get("MacAddress"),
            "description": eni.get("Description", ""),
            "security_group_ids": sorted(g["GroupId"] for g in eni.get("Groups", [])),
            "source_dest_check": eni.get("SourceDestCheck", True),
            "tags": tags_from(eni, "TagSet"),
        }

    def _modify(self, ctx: EngineContext, eni_id: str, **kwargs: Any) -> None:
        # One attribute per ModifyNetworkInterfaceAttribute call.
        with self.errors(f"modifying network interface {eni_id}"):
            self.client(ctx).modify_network_interface_attribute(NetworkInterfaceId=eni_id, **kwargs)

    def create(self, ctx: EngineContext, attributes: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        with self.errors("creating network interface"):
            resp = self.client(ctx).create_network_interface(
                SubnetId=attributes["subnet_id"],
                TagSpecifications=tag_specifications("network-interface", attributes.get("tags")),
                **drop_none(
                    Groups=attributes.get("security_group_ids"),
                    PrivateIpAddress=attributes.get("private_ip_address"),
                    Description=attributes.get("description"),
                ),
            )
        eni_id = resp["NetworkInterface"]["NetworkInterfaceId"]
        if attributes.get("source_dest_check") is False:
            self._modify(ctx, eni_id, SourceDestCheck={"Value": False})
        return eni_id, self.stored(ctx, eni_id, attributes)

    def update(
        self, ctx: EngineContext, prior: StateRecord, diff: dict[str, Any]
    ) -> dict[str, Any]:
        eni_id = prior.remote_id
        if "security_group_ids" in diff:
            self._modify(ctx, eni_id, Groups=list(diff["security_group_ids"]["to"] or []))
        if "description" in diff:
            self._modify(ctx, eni_id, Description={"Value": diff["description"]["to"] or ""})
        if "source_dest_check" in diff:
            check = bool(diff["source_dest_check"]["to"])
            self._modify(ctx, eni_id, SourceDestCheck={"Value": check})
        if "tags" in diff:
            self.update_ec2_tags(ctx, eni_id, diff["tags"]["from"], diff["tags"]["to"])
        return self.stored(ctx, eni_id, {})

    def delete(self, ctx: EngineContext, prior: StateRecord) -> None:
        with self.errors(f"deleting network interface {prior.remote_id}"):
            self.client(ctx).delete_network_interface(NetworkInterfaceId=prior.remote_id)


class EipHandler(AwsHandler):
    """CRUD handler for ``aws_eip`` (VPC allocations, optionally bound to an ENI)."""

    schema = ResourceSchema(
        kind="aws_eip",
        updatable=frozenset({"network_interface_id", "tags"}),
        computed=frozenset({"public_ip", "association_id", "private_ip_address"}),
        compare={"tags": "exact"},
        defaults={"network_interface_id": None, "tags": {}},
        plan_priority=50,
    )
    not_found_codes = frozenset({"InvalidAllocationID.NotFound"})

    def describe(self, ctx: EngineContext, remote_id: str) -> dict[str, Any] | None:
        with self.errors(f"describing elastic IP {remote_id}"):
            addresses = (
                self.client(ctx).describe_addresses(AllocationIds=[remote_id]).get("Addresses", [])
            )
        if not addresses:
            return None
        addr = addresses[0]
        return {
            "public_ip": addr.get("PublicIp"),
            "network_interface_id": addr.get("NetworkInterfaceId"),
            "association_id": addr.get("AssociationId"),
            "private_ip_address": addr.get("PrivateIpAddress"),
            "tags": tags_from(addr),
        }

    def _associate(self, ctx: EngineContext, allocation_id: str, eni_id: str) -> None:
        with self.errors(f"associating {allocation_id} with {eni_id}"):
            self.client(ctx).associate_address(
                AllocationId=allocation_id, NetworkInterfaceId=eni_id, AllowReassociation=True
            )

    def _disassociate(self, ctx: EngineContext, association_id: str | None) -> None:
        if not association_id:
            return
        with self.errors(f"disassociating {association_id}"):
            self.client(ctx).disassociate_address(AssociationId=association_id)

    def create(self, ctx: EngineContext, attributes: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        with self.errors("allocating elastic IP"):
            resp = self.client(ctx).allocate_address(
                Domain="vpc",
                TagSpecifications=tag_specifications("elastic-ip", attributes.get("tags")),
            )
        allocation_id = resp["AllocationId"]
        if attributes.get("network_interface_id"):
            self._associate(ctx, allocation_id, attributes["network_interface_id"])
        return allocation_id, self.stored(ctx, allocation_id, attributes)

    def update(
        self, ctx: EngineContext, prior: StateRecord, diff: dict[str, Any]
    ) -> dict[str, Any]:
        allocation_id = prior.remote_id
        if "network_interface_id" in diff:
            target = diff["network_interface_id"]["to"]
            if target:
                self._associate(ctx, allocation_id, target)
            else:
                self._disassociate(ctx, prior.attributes.get("association_id"))
        if "tags" in diff:
            self.update_ec2_tags(ctx, allocation_id, diff["tags"]["from"], diff["tags"]["to"])
        return self.stored(ctx, allocation_id, {})

    def delete(self, ctx: EngineContext, prior: StateRecord) -> None:
        current = self.describe(ctx, prior.remote_id)
        if current is None:
            return
        self._disassociate(ctx, current["association_id"])
        with self.errors(f"releasing elastic IP {prior.remote_id}"):
            self.client(ctx).release_address(AllocationId=prior.remote_id)


class InstanceHandler(AwsHandler):
    """CRUD handler for ``aws_instance``.

    Either ``network_interface_id`` (attached as device 0) or ``subnet_id``
    with optional ``security_group_ids`` places the instance. Changing
    ``instance_type`` stops and restarts the instance.
    """

    schema = ResourceSchema(
        kind="aws_instance",
        required=frozenset({"ami", "instance_type"}),
        replace_only=frozenset(
            {
                "ami",
                "subnet_id",
                "network_interface_id",
                "security_group_ids",
                "key_name",
                "user_data",
            }
        ),
        updatable=frozenset({"instance_type", "tags"}),
        computed=frozenset({"private_ip", "public_ip", "instance_state", "availability_zone"}),
        sensitive=frozenset({"user_data"}),
        compare={"security_group_ids": "set", "tags": "exact"},
        defaults={"tags": {}},
        plan_priority=60,
    )
    not_found_codes = frozenset({"InvalidInstanceID.NotFound"})
    write_only = frozenset({"user_data"})

    def validate(self, ctx: EngineContext, desired: Resource) -> list[str]:
        errors = super().validate(ctx, desired)
        attrs = desired.attributes
        placed = "subnet_id" in attrs or "security_group_ids" in attrs
        if "network_interface_id" in attrs and placed:
            errors.append(
                "network_interface_id cannot be combined with subnet_id or security_group_ids"
            )
        return errors

    def describe(self, ctx: EngineContext, remote_id: str) -> dict[str, Any] | None:
        with self.errors(f"describing instance {remote_id}"):
            reservations = (
                self.client(ctx).describe_instances(InstanceIds=[remote_id]).get("Reservations", [])
            )
        instances = [i for r in reservations for i in r.get("Instances", [])]
        if not instances:
            return None
        inst = instances[0]
        state = inst.get("State", {}).get("Name")
        if state in ("shutting-down", "terminated"):
            return None
        primary = next(
            (
                eni
                for eni in inst.get("NetworkInterfaces", [])
                if eni.get("Attachment", {}).get("DeviceIndex") == 0
            ),
            None,
        )
        attrs: dict[str, Any] = {
            "ami": inst["ImageId"],
            "instance_type": inst["InstanceType"],
            "subnet_id": inst.get("SubnetId"),
            "security_group_ids": sorted(g["GroupId"] for g in inst.get("SecurityGroups", [])),
            "private_ip": inst.get("PrivateIpAddress"),
            "public_ip": inst.get("PublicIpAddress"),
            "availability_zone": inst.get("Placement", {}).get("AvailabilityZone"),
            "instance_state": state,
            "tags": tags_from(inst),
        }
        if inst.get("KeyName"):
            attrs["key_name"] = inst["KeyName"]
        if primary is not None:
            attrs["network_interface_id"] = primary["NetworkInterfaceId"]
        return attrs

    def create(self, ctx: EngineContext, attributes: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        kwargs: dict[str, Any] = drop_none(
            ImageId=attributes["ami"],
            InstanceType=attributes["instance_type"],
            KeyName=attributes.get("key_name"),
            SubnetId=attributes.get("subnet_id"),
            SecurityGroupIds=attributes.get("security_group_ids"),
        )
        if attributes.get("user_data"):
            kwargs["UserData"] = base64.b64encode(attributes["user_data"].encode()).decode()
        if attributes.get("network_interface_id"):
            kwargs["NetworkInterfaces"] = [
                {"DeviceIndex": 0, "NetworkInterfaceId": attributes["network_interface_id"]}
            ]
        specs = tag_specifications("instance", attributes.get("tags"))
        if specs:
            kwargs["TagSpecifications"] = specs

        with self.errors("launching instance"):
            resp = self.client(ctx).run_instances(MinCount=1, MaxCount=1, **kwargs)
        instance_id = resp["Instances"][0]["InstanceId"]
        self.wait(ctx, "instance_running", InstanceIds=[instance_id])
        return instance_id, self.stored(ctx, instance_id, attributes)

    def _resize(self, ctx: EngineContext, instance_id: str, instance_type: str) -> None:
        client = self.client(ctx)
        logger.info("Stopping %s to change its type to %s", instance_id, instance_type)
        with self.errors(f"stopping {instance_id}"):
            client.stop_instances(InstanceIds=[instance_id])
        self.wait(ctx, "instance_stopped", InstanceIds=[instance_id])
        with self.errors(f"resizing {instance_id}"):
            client.modify_instance_attribute(
                InstanceId=instance_id, InstanceType={"Value": instance_type}
            )
        with self.errors(f"starting {instance_id}"):
            client.start_instances(InstanceIds=[instance_id])
        self.wait(ctx, "instance_running", InstanceIds=[instance_id])

    def update(
        self, ctx: EngineContext, prior: StateRecord, diff: dict[str, Any]
    ) -> dict[str, Any]:
        instance_id = prior.remote_id
        if "instance_type" in diff:
            self._resize(ctx, instance_id, diff["instance_type"]["to"])
        if "tags" in diff:
            self.update_ec2_tags(ctx, instance_id, diff["tags"]["from"], diff["tags"]["to"])
        return self.stored(ctx, instance_id, prior.attributes)

    def delete(self, ctx: EngineContext, prior: StateRecord) -> None:
        with self.errors(f"terminating instance {prior.remote_id}"):
            self.client(ctx).terminate_instances(InstanceIds=[prior.remote_id])
        # Attached ENIs and security groups stay busy until termination completes.
        self.wait(ctx, "instance_terminated", InstanceIds=[prior.remote_id])
