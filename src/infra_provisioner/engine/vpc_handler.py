"""VPC, subnet, internet gateway and route table handlers (EC2 API)."""

from __future__ import annotations

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

logger = logging.getLogger(__name__)


class VpcHandler(AwsHandler):
    """CRUD handler for ``aws_vpc``."""

    schema = ResourceSchema(
        kind="aws_vpc",
        required=frozenset({"cidr_block"}),
        replace_only=frozenset({"cidr_block", "instance_tenancy"}),
        updatable=frozenset({"enable_dns_support", "enable_dns_hostnames", "tags"}),
        computed=frozenset({"owner_id", "is_default"}),
        compare={"tags": "exact"},
        defaults={"enable_dns_support": True, "enable_dns_hostnames": False, "tags": {}},
        plan_priority=10,
    )
    not_found_codes = frozenset({"InvalidVpcID.NotFound"})

    _DNS_ATTRIBUTES = {
        "enable_dns_support": "enableDnsSupport",
        "enable_dns_hostnames": "enableDnsHostnames",
    }

    def describe(self, ctx: EngineContext, remote_id: str) -> dict[str, Any] | None:
        client = self.client(ctx)
        with self.errors(f"describing VPC {remote_id}"):
            vpcs = client.describe_vpcs(VpcIds=[remote_id]).get("Vpcs", [])
            if not vpcs:
                return None
            vpc = vpcs[0]
            attrs: dict[str, Any] = {
                "cidr_block": vpc["CidrBlock"],
                "instance_tenancy": vpc.get("InstanceTenancy", "default"),
                "owner_id": vpc.get("OwnerId"),
                "is_default": vpc.get("IsDefault", False),
                "tags": tags_from(vpc),
            }
            for attr, api_name in self._DNS_ATTRIBUTES.items():
                resp = client.describe_vpc_attribute(VpcId=remote_id, Attribute=api_name)
                key = api_name[0].upper() + api_name[1:]
                attrs[attr] = resp[key]["Value"]
        return attrs

    def _set_dns(self, ctx: EngineContext, vpc_id: str, attr: str, value: bool) -> None:
        # ModifyVpcAttribute accepts a single attribute per call.
        api_name = self._DNS_ATTRIBUTES[attr]
        key = api_name[0].upper() + api_name[1:]
        with self.errors(f"setting {attr} on {vpc_id}"):
            self.client(ctx).modify_vpc_attribute(VpcId=vpc_id, **{key: {"Value": value}})

    def create(self, ctx: EngineContext, attributes: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        client = self.client(ctx)
        with self.errors("creating VPC"):
            resp = client.create_vpc(
                CidrBlock=attributes["cidr_block"],
                TagSpecifications=tag_specifications("vpc", attributes.get("tags")),
                **drop_none(InstanceTenancy=attributes.get("instance_tenancy")),
            )
        vpc_id = resp["Vpc"]["VpcId"]
        self.wait(ctx, "vpc_available", VpcIds=[vpc_id])
        for attr in self._DNS_ATTRIBUTES:
            if attr in attributes:
                self._set_dns(ctx, vpc_id, attr, attributes[attr])
        return vpc_id, self.stored(ctx, vpc_id, attributes)

    def update(
        self, ctx: EngineContext, prior: StateRecord, diff: dict[str, Any]
    ) -> dict[str, Any]:
        vpc_id = prior.remote_id
        for attr, change in diff.items():
            if attr in self._DNS_ATTRIBUTES:
                self._set_dns(ctx, vpc_id, attr, change["to"])
            elif attr == "tags":
                self.update_ec2_tags(ctx, vpc_id, change["from"], change["to"])
        return self.stored(ctx, vpc_id, {})

    def delete(self, ctx: EngineContext, prior: StateRecord) -> None:
        with self.errors(f"deleting VPC {prior.remote_id}"):
            self.client(ctx).delete_vpc(VpcId=prior.remote_id)


class SubnetHandler(AwsHandler):
    """CRUD handler for ``aws_subnet``."""

    schema = ResourceSchema(
        kind="aws_subnet",
        required=frozenset({"vpc_id", "cidr_block"}),
        replace_only=frozenset({"vpc_id", "cidr_block", "availability_zone"}),
        updatable=frozenset({"map_public_ip_on_launch", "tags"}),
        computed=frozenset({"availability_zone_id", "arn"}),
        compare={"tags": "exact"},
        defaults={"map_public_ip_on_launch": False, "tags": {}},
        plan_priority=20,
    )
    not_found_codes = frozenset({"InvalidSubnetID.NotFound"})

    def describe(self, ctx: EngineContext, remote_id: str) -> dict[str, Any] | None:
        with self.errors(f"describing subnet {remote_id}"):
            subnets = self.client(ctx).describe_subnets(SubnetIds=[remote_id]).get("Subnets", [])
        if not subnets:
            return None
        subnet = subnets[0]
        return {
            "vpc_id": subnet["VpcId"],
            "cidr_block": subnet["CidrBlock"],
            "availability_zone": subnet.get("AvailabilityZone"),
            "availability_zone_id": subnet.get("AvailabilityZoneId"),
            "arn": subnet.get("SubnetArn"),
            "map_public_ip_on_launch": subnet.get("MapPublicIpOnLaunch", False),
            "tags": tags_from(subnet),
        }

    def _set_public_ip(self, ctx: EngineContext, subnet_id: str, value: bool) -> None:
        with self.errors(f"setting map_public_ip_on_launch on {subnet_id}"):
            self.client(ctx).modify_subnet_attribute(
                SubnetId=subnet_id, MapPublicIpOnLaunch={"Value": value}
            )

    def create(self, ctx: EngineContext, attributes: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        client = self.client(ctx)
        with self.errors("creating subnet"):
            resp = client.create_subnet(
                VpcId=attributes["vpc_id"],
                CidrBlock=attributes["cidr_block"],
                TagSpecifications=tag_specifications("subnet", attributes.get("tags")),
                **drop_none(AvailabilityZone=attributes.get("availability_zone")),
            )
        subnet_id = resp["Subnet"]["SubnetId"]
        self.wait(ctx, "subnet_available", SubnetIds=[subnet_id])
        if attributes.get("map_public_ip_on_launch"):
            self._set_public_ip(ctx, subnet_id, True)
        return subnet_id, self.stored(ctx, subnet_id, attributes)

    def update(
        self, ctx: EngineContext, prior: StateRecord, diff: dict[str, Any]
    ) -> dict[str, Any]:
        subnet_id = prior.remote_id
        if "map_public_ip_on_launch" in diff:
            self._set_public_ip(ctx, subnet_id, bool(diff["map_public_ip_on_launch"]["to"]))
        if "tags" in diff:
            self.update_ec2_tags(ctx, subnet_id, diff["tags"]["from"], diff["tags"]["to"])
        return self.stored(ctx, subnet_id, {})

    def delete(self, ctx: EngineContext, prior: StateRecord) -> None:
        with self.errors(f"deleting subnet {prior.remote_id}"):
            self.client(ctx).delete_subnet(SubnetId=prior.remote_id)


class InternetGatewayHandler(AwsHandler):
    """CRUD handler for ``aws_internet_gateway`` (created and attached in one step)."""

    schema = ResourceSchema(
        kind="aws_internet_gateway",
        updatable=frozenset({"vpc_id", "tags"}),
        computed=frozenset({"owner_id"}),
        compare={"tags": "exact"},
        defaults={"vpc_id": None, "tags": {}},
        plan_priority=20,
    )
    not_found_codes = frozenset({"InvalidInternetGatewayID.NotFound"})

    def describe(self, ctx: EngineContext, remote_id: str) -> dict[str, Any] | None:
        with self.errors(f"describing internet gateway {remote_id}"):
            igws = (
                self.client(ctx)
                .describe_internet_gateways(InternetGatewayIds=[remote_id])
                .get("InternetGateways", [])
            )
        if not igws:
            return None
        igw = igws[0]
        attachments = [a for a in igw.get("Attachments", []) if a.get("State") != "detached"]
        return {
            "vpc_id": attachments[0]["VpcId"] if attachments else None,
            "owner_id": igw.get("OwnerId"),
            "tags": tags_from(igw),
        }

    def _attach(self, ctx: EngineContext, igw_id: str, vpc_id: str) -> None:
        with self.errors(f"attaching {igw_id} to {vpc_id}"):
            self.client(ctx).attach_internet_gateway(InternetGatewayId=igw_id, VpcId=vpc_id)

    def _detach(self, ctx: EngineContext, igw_id: str, vpc_id: str) -> None:
        with self.errors(f"detaching {igw_id} from {vpc_id}"):
            self.client(ctx).detach_internet_gateway(InternetGatewayId=igw_id, VpcId=vpc_id)

    def create(self, ctx: EngineContext, attributes: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        with self.errors("creating internet gateway"):
            resp = self.client(ctx).create_internet_gateway(
                TagSpecifications=tag_specifications("internet-gateway", attributes.get("tags"))
            )
        igw_id = resp["InternetGateway"]["InternetGatewayId"]
        if attributes.get("vpc_id"):
            self._attach(ctx, igw_id, attributes["vpc_id"])
        return igw_id, self.stored(ctx, igw_id, attributes)

    def update(
        self, ctx: EngineContext, prior: StateRecord, diff: dict[str, Any]
    ) -> dict[str, Any]:
        igw_id = prior.remote_id
        if "vpc_id" in diff:
            old, new = diff["vpc_id"]["from"], diff["vpc_id"]["to"]
            if old:
                self._detach(ctx, igw_id, old)
            if new:
                self._attach(ctx, igw_id, new)
        if "tags" in diff:
            self.update_ec2_tags(ctx, igw_id, diff["tags"]["from"], diff["tags"]["to"])
        return self.stored(ctx, igw_id, {})

    def delete(self, ctx: EngineContext, prior: StateRecord) -> None:
        igw_id = prior.remote_id
        current = self.describe(ctx, igw_id)
        if current is None:
            return
        if current["vpc_id"]:
            self._detach(ctx, igw_id, current["vpc_id"])
        with self.errors(f"deleting internet gateway {igw_id}"):
            self.client(ctx).delete_internet_gateway(InternetGatewayId=igw_id)


def _route_key(route: dict[str, Any]) -> str:
    return route["destination_cidr_block"]


class RouteTableHandler(AwsHandler):
    """CRUD handler for ``aws_route_table``.

    ``routes`` is a list of ``{destination_cidr_block, gateway_id}`` entries
    (the implicit ``local`` route is not listed); ``subnet_ids`` lists the
    associated subnets. Both are compared as sets.
    """

    schema = ResourceSchema(
        kind="aws_route_table",
        required=frozenset({"vpc_id"}),
        replace_only=frozenset({"vpc_id"}),
        updatable=frozenset({"routes", "subnet_ids", "tags"}),
        computed=frozenset({"owner_id"}),
        compare={"routes": "set", "subnet_ids": "set", "tags": "exact"},
        defaults={"routes": [], "subnet_ids": [], "tags": {}},
        plan_priority=30,
    )
    not_found_codes = frozenset({"InvalidRouteTableID.NotFound"})

    def _describe_raw(self, ctx: EngineContext, remote_id: str) -> dict[str, Any] | None:
        with self.errors(f"describing route table {remote_id}"):
            resp = self.client(ctx).describe_route_tables(RouteTableIds=[remote_id])
        tables = resp.get("RouteTables", [])
        return tables[0] if tables else None

    def describe(self, ctx: EngineContext, remote_id: str) -> dict[str, Any] | None:
        table = self._describe_raw(ctx, remote_id)
        if table is None:
            return None
        routes = [
            {
                "destination_cidr_block": r["DestinationCidrBlock"],
                "gateway_id": r.get("GatewayId"),
            }
            for r in table.get("Routes", [])
            if r.get("Origin") == "CreateRoute" and "DestinationCidrBlock" in r
        ]
        subnet_ids = [
            a["SubnetId"]
            for a in table.get("Associations", [])
            if not a.get("Main") and a.get("SubnetId")
        ]
        return {
            "vpc_id": table["VpcId"],
            "owner_id": table.get("OwnerId"),
            "routes": sorted(routes, key=_route_key),
            "subnet_ids": sorted(subnet_ids),
            "tags": tags_from(table),
        }

    def _create_route(self, ctx: EngineContext, table_id: str, route: dict[str, Any]) -> None:
        with self.errors(f"adding route {route['destination_cidr_block']} to {table_id}"):
            self.client(ctx).create_route(
                RouteTableId=table_id,
                DestinationCidrBlock=route["destination_cidr_block"],
                GatewayId=route["gateway_id"],
            )

    def _associate(self, ctx: EngineContext, table_id: str, subnet_id: str) -> None:
        with self.errors(f"associating {table_id} with {subnet_id}"):
            self.client(ctx).associate_route_table(RouteTableId=table_id, SubnetId=subnet_id)

    def create(self, ctx: EngineContext, attributes: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        with self.errors("creating route table"):
            resp = self.client(ctx).create_route_table(
                VpcId=attributes["vpc_id"],
                TagSpecifications=tag_specifications("route-table", attributes.get("tags")),
            )
        table_id = resp["RouteTable"]["RouteTableId"]
        for route in attributes.get("routes") or []:
            self._create_route(ctx, table_id, route)
        for subnet_id in attributes.get("subnet_ids") or []:
            self._associate(ctx, table_id, subnet_id)
        return table_id, self.stored(ctx, table_id, attributes)

    def _sync_routes(
        self,
        ctx: EngineContext,
        table_id: str,
        old: list[dict[str, Any]],
        new: list[dict[str, Any]],
    ) -> None:
        client = self.client(ctx)
        old_by_dest = {_route_key(r): r for r in old or []}
        new_by_dest = {_route_key(r): r for r in new or []}
        for dest in sorted(old_by_dest.keys() - new_by_dest.keys()):
            with self.errors(f"removing route {dest} from {table_id}"):
                client.delete_route(RouteTableId=table_id, DestinationCidrBlock=dest)
        for dest, route in sorted(new_by_dest.items()):
            if dest not in old_by_dest:
                self._create_route(ctx, table_id, route)
            elif old_by_dest[dest].get("gateway_id") != route.get("gateway_id"):
                with self.errors(f"replacing route {dest} in {table_id}"):
                    client.replace_route(
                        RouteTableId=table_id,
                        DestinationCidrBlock=dest,
                        GatewayId=route["gateway_id"],
                    )

    def _disassociate(self, ctx: EngineContext, table_id: str, subnet_ids: set[str]) -> None:
        table = self._describe_raw(ctx, table_id) or {}
        for assoc in table.get("Associations", []):
            if assoc.get("SubnetId") in subnet_ids and not assoc.get("Main"):
                with self.errors(f"disassociating {table_id} from {assoc['SubnetId']}"):
                    self.client(ctx).disassociate_route_table(
                        AssociationId=assoc["RouteTableAssociationId"]
                    )

    def update(
        self, ctx: EngineContext, prior: StateRecord, diff: dict[str, Any]
    ) -> dict[str, Any]:
        table_id = prior.remote_id
        if "routes" in diff:
            self._sync_routes(ctx, table_id, diff["routes"]["from"], diff["routes"]["to"])
        if "subnet_ids" in diff:
            old = set(diff["subnet_ids"]["from"] or [])
            new = set(diff["subnet_ids"]["to"] or [])
            self._disassociate(ctx, table_id, old - new)
            for subnet_id in sorted(new - old):
                self._associate(ctx, table_id, subnet_id)
        if "tags" in diff:
            self.update_ec2_tags(ctx, table_id, diff["tags"]["from"], diff["tags"]["to"])
        return self.stored(ctx, table_id, {})

    def delete(self, ctx: EngineContext, prior: StateRecord) -> None:
        table_id = prior.remote_id
        table = self._describe_raw(ctx, table_id)
        if table is None:
            return
        associated = {a["SubnetId"] for a in table.get("Associations", []) if a.get("SubnetId")}
        self._disassociate(ctx, table_id, associated)
        with self.errors(f"deleting route table {table_id}"):
            self.client(ctx).delete_route_table(RouteTableId=table_id)
