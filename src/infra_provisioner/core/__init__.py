"""Core infrastructure components for infra-provisioner."""

from infra_provisioner.core.provider import AwsProvider
from infra_provisioner.core.state import PendingOperation, State, StateRecord, StateStore

__all__ = ["AwsProvider", "PendingOperation", "State", "StateRecord", "StateStore"]
