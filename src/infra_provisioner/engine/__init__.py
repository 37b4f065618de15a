"""Plan and apply engine for infrastructure resources."""

from infra_provisioner.engine.builder import ResourceGraph, ResourceNode, build_graph
from infra_provisioner.engine.engine import ReconcileEngine
from infra_provisioner.engine.errors import (
    ApplyCanceled,
    ConfigurationError,
    CycleError,
    DuplicateAddressError,
    EngineError,
    ProviderError,
    ResourceNotFoundError,
    StalePlanError,
    StaleStateError,
    StateConflictError,
    StateLockError,
    TransientError,
    UnknownResourceKindError,
    UnknownStateError,
    UnresolvedReferenceError,
    ValidationError,
)
from infra_provisioner.engine.handlers import EngineContext, ResourceHandler
from infra_provisioner.engine.registry import ResourceKindRegistration, ResourceKindRegistry
from infra_provisioner.engine.retry import RetryPolicy
from infra_provisioner.engine.types import (
    Action,
    ApplyResult,
    OutcomeStatus,
    Plan,
    PlanMetadata,
    ResourceChange,
    ResourceOutcome,
)

__all__ = [
    "Action",
    "ApplyCanceled",
    "ApplyResult",
    "ConfigurationError",
    "CycleError",
    "DuplicateAddressError",
    "EngineContext",
    "EngineError",
    "OutcomeStatus",
    "Plan",
    "PlanMetadata",
    "ProviderError",
    "ReconcileEngine",
    "ResourceChange",
    "ResourceGraph",
    "ResourceHandler",
    "ResourceKindRegistration",
    "ResourceKindRegistry",
    "ResourceNode",
    "ResourceNotFoundError",
    "ResourceOutcome",
    "RetryPolicy",
    "StalePlanError",
    "StaleStateError",
    "StateConflictError",
    "StateLockError",
    "TransientError",
    "UnknownResourceKindError",
    "UnknownStateError",
    "UnresolvedReferenceError",
    "ValidationError",
    "build_graph",
]
