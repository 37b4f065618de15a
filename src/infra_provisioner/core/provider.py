"""AWS Provider - Connection configuration for an AWS account/region."""

import threading
from functools import cached_property
from typing import TYPE_CHECKING, Any, Self

import boto3
from pydantic import BaseModel, ConfigDict, PrivateAttr

if TYPE_CHECKING:
    from botocore.client import BaseClient


class AwsProvider(BaseModel):
    """Connection configuration for AWS.

    For normal use, provide a region and optionally a named profile. For
    testing (or to reuse an existing session), use the `from_session`
    classmethod to inject a session.

    Examples:
        # Named profile
        provider = AwsProvider(region="eu-west-1", profile="infra")

        # Injected session (e.g. a MagicMock in tests)
        provider = AwsProvider.from_session(boto3.Session(region_name="eu-west-1"))
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    region: str | None = None
    profile: str | None = None
    endpoint_url: str | None = None

    # Injected session (for testing / reuse)
    _injected_session: Any = None
    _clients: dict[str, Any] = PrivateAttr(default_factory=dict)
    _clients_lock: threading.Lock = PrivateAttr(default_factory=threading.Lock)

    @classmethod
    def from_session(cls, session: Any) -> Self:
        """Create a provider with an injected session.

        Args:
            session: A pre-configured ``boto3.Session`` (or a compatible mock)
        """
        provider = cls.model_construct()
        provider._injected_session = session
        return provider

    @cached_property
    def session(self) -> boto3.Session:
        """Get the boto3 session."""
        if self._injected_session is not None:
            return self._injected_session
        return boto3.Session(profile_name=self.profile, region_name=self.region)

    def client(self, service: str) -> "BaseClient":
        """Return a shared low-level client for *service* (``ec2``, ``rds``).

        boto3 clients are thread-safe once created; creation itself is guarded
        so that concurrent workers share a single client per service.
        """
        with self._clients_lock:
            client = self._clients.get(service)
            if client is None:
                kwargs: dict[str, Any] = {}
                if self.endpoint_url:
                    kwargs["endpoint_url"] = self.endpoint_url
                client = self.session.client(service, **kwargs)
                self._clients[service] = client
            return client
