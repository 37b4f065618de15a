from infra_provisioner.config.registry import default_registry


def test_default_registry_kinds() -> None:
    assert default_registry().kinds() == [
        "aws_db_instance",
        "aws_db_subnet_group",
        "aws_eip",
        "aws_instance",
        "aws_internet_gateway",
        "aws_network_interface",
        "aws_route_table",
        "aws_security_group",
        "aws_subnet",
        "aws_vpc",
    ]


def test_registries_are_independent() -> None:
    a = default_registry()
    b = default_registry()
    assert a.get("aws_vpc").handler is not b.get("aws_vpc").handler


def test_plan_priorities_follow_network_layering() -> None:
    reg = default_registry()
    priority = {k: reg.get(k).schema.plan_priority for k in reg.kinds()}
    assert priority["aws_vpc"] < priority["aws_subnet"] < priority["aws_network_interface"]
    assert priority["aws_instance"] < priority["aws_db_instance"]


def test_sensitive_attributes() -> None:
    reg = default_registry()
    assert "password" in reg.get("aws_db_instance").schema.sensitive
    assert "user_data" in reg.get("aws_instance").schema.sensitive
