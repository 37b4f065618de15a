"""Shared plumbing for boto3-backed handlers."""

from __future__ import annotations

import contextlib
import logging
from typing import TYPE_CHECKING, Any, ClassVar

from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ReadTimeoutError,
    WaiterError,
)
from botocore.exceptions import (
    ConnectionError as BotoConnectionError,
)

from infra_provisioner.engine.errors import (
    ProviderError,
    ResourceNotFoundError,
    TransientError,
)
from infra_provisioner.engine.handlers import ResourceHandler

if TYPE_CHECKING:
    from collections.abc import Iterator, Mapping

    from botocore.client import BaseClient

    from infra_provisioner.core.state import StateRecord
    from infra_provisioner.engine.handlers import EngineContext

logger = logging.getLogger(__name__)

# Error codes AWS documents as retryable. DependencyViolation shows up while
# AWS is still releasing a dependent object (ENI detach, instance terminate).
TRANSIENT_CODES = frozenset(
    {
        "Throttling",
        "ThrottlingException",
        "RequestLimitExceeded",
        "RequestThrottled",
        "TooManyRequestsException",
        "ServiceUnavailable",
        "Unavailable",
        "InternalError",
        "InternalFailure",
        "DependencyViolation",
        "IncorrectInstanceState",
        "InvalidDBInstanceState",
    }
)

# Covers EndpointConnectionError and ConnectTimeoutError.
_NETWORK_ERRORS = (BotoConnectionError, ReadTimeoutError)


def error_code(exc: ClientError) -> str:
    return exc.response.get("Error", {}).get("Code", "")


@contextlib.contextmanager
def aws_errors(description: str, *, not_found: frozenset[str] = frozenset()) -> Iterator[None]:
    """Translate botocore failures into engine errors.

    Codes in *not_found* become ``ResourceNotFoundError``; throttling, server
    and connection failures become ``TransientError``; anything else is a
    plain ``ProviderError``.
    """
    try:
        yield
    except ClientError as exc:
        code = error_code(exc)
        msg = f"{description}: {exc}"
        if code in not_found:
            raise ResourceNotFoundError(msg) from exc
        if code in TRANSIENT_CODES:
            raise TransientError(msg) from exc
        raise ProviderError(msg) from exc
    except _NETWORK_ERRORS as exc:
        raise TransientError(f"{description}: {exc}") from exc
    except WaiterError as exc:
        raise ProviderError(f"{description}: {exc}") from exc
    except BotoCoreError as exc:
        raise ProviderError(f"{description}: {exc}") from exc


# ── Tags ────────────────────────────────────────────────────────────


def tag_list(tags: Mapping[str, str] | None) -> list[dict[str, str]]:
    return [{"Key": k, "Value": str(v)} for k, v in sorted((tags or {}).items())]


def tag_specifications(resource_type: str, tags: Mapping[str, str] | None) -> list[dict[str, Any]]:
    """``TagSpecifications`` argument for EC2 create calls (empty when untagged)."""
    if not tags:
        return []
    return [{"ResourceType": resource_type, "Tags": tag_list(tags)}]


def tags_from(obj: Mapping[str, Any], key: str = "Tags") -> dict[str, str]:
    return {t["Key"]: t["Value"] for t in obj.get(key) or [] if not t["Key"].startswith("aws:")}


def drop_none(**kwargs: Any) -> dict[str, Any]:
    """Keyword arguments for a boto3 call, without the unset ones."""
    return {k: v for k, v in kwargs.items() if v is not None}


class AwsHandler(ResourceHandler):
    """Base class for AWS handlers.

    Subclasses set ``service`` and ``not_found_codes`` and implement
    ``describe`` (remote object -> attribute dict, or None when gone).
    ``write_only`` attributes cannot be read back from AWS; their last
    applied value is carried over from state.
    """

    service: ClassVar[str] = "ec2"
    not_found_codes: ClassVar[frozenset[str]] = frozenset()
    write_only: ClassVar[frozenset[str]] = frozenset()

    def client(self, ctx: EngineContext) -> BaseClient:
        return ctx.provider.client(self.service)

    def errors(self, description: str) -> contextlib.AbstractContextManager[None]:
        return aws_errors(description, not_found=self.not_found_codes)

    def wait(self, ctx: EngineContext, waiter: str, **kwargs: Any) -> None:
        with self.errors(f"waiting for {waiter}"):
            self.client(ctx).get_waiter(waiter).wait(**kwargs)

    def describe(self, ctx: EngineContext, remote_id: str) -> dict[str, Any] | None:
        raise NotImplementedError

    def stored(
        self, ctx: EngineContext, remote_id: str, attributes: Mapping[str, Any]
    ) -> dict[str, Any]:
        """Attributes to commit after a create or update."""
        attrs = self.describe(ctx, remote_id)
        if attrs is None:
            raise ProviderError(
                f"{self.schema.kind} {remote_id} vanished right after being written"
            )
        for key in self.write_only:
            if key in attributes:
                attrs[key] = attributes[key]
        return attrs

    def read(self, ctx: EngineContext, prior: StateRecord) -> dict[str, Any] | None:
        try:
            attrs = self.describe(ctx, prior.remote_id)
        except ResourceNotFoundError:
            return None
        if attrs is None:
            return None
        for key in self.write_only:
            if key in prior.attributes:
                attrs[key] = prior.attributes[key]
        return attrs

    def update_ec2_tags(
        self,
        ctx: EngineContext,
        remote_id: str,
        old: Mapping[str, str] | None,
        new: Mapping[str, str] | None,
    ) -> None:
        old = dict(old or {})
        new = dict(new or {})
        client = self.client(ctx)
        removed = [{"Key": k} for k in sorted(old.keys() - new.keys())]
        changed = {k: v for k, v in new.items() if old.get(k) != v}
        with self.errors(f"tagging {remote_id}"):
            if removed:
                client.delete_tags(Resources=[remote_id], Tags=removed)
            if changed:
                client.create_tags(Resources=[remote_id], Tags=tag_list(changed))
