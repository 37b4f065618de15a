"""Default resource kind registry factory."""

from __future__ import annotations

from infra_provisioner.engine.instance_handler import (
    EipHandler,
    InstanceHandler,
    NetworkInterfaceHandler,
)
from infra_provisioner.engine.rds_handler import DbInstanceHandler, DbSubnetGroupHandler
from infra_provisioner.engine.registry import ResourceKindRegistry
from infra_provisioner.engine.security_group_handler import SecurityGroupHandler
from infra_provisioner.engine.vpc_handler import (
    InternetGatewayHandler,
    RouteTableHandler,
    SubnetHandler,
    VpcHandler,
)


def default_registry() -> ResourceKindRegistry:
    """Create a fresh registry with all built-in resource kinds and handlers."""
    registry = ResourceKindRegistry()

    registry.register(VpcHandler())
    registry.register(SubnetHandler())
    registry.register(InternetGatewayHandler())
    registry.register(RouteTableHandler())
    registry.register(SecurityGroupHandler())

    registry.register(NetworkInterfaceHandler())
    registry.register(EipHandler())
    registry.register(InstanceHandler())

    registry.register(DbSubnetGroupHandler())
    registry.register(DbInstanceHandler())

    return registry
