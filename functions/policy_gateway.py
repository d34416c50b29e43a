#!/usr/bin/env python3
"""Access to organizations and their IAM policies.

``PolicyGateway`` is the narrow interface the remediator depends on.
``ResourceManagerGateway`` talks to the Cloud Resource Manager API and
``InMemoryGateway`` keeps everything in memory for tests and local runs.
"""

import copy
import logging
from abc import ABC, abstractmethod
from typing import Any

from google.api_core import exceptions as google_exceptions
from google.cloud import resourcemanager_v3
from google.iam.v1 import iam_policy_pb2, options_pb2, policy_pb2
from google.type import expr_pb2

from errors import (
    ConcurrentModificationError,
    PolicyFetchFailure,
    PolicyWriteFailure,
    RemediationDeadlineExceeded,
)
from policy import Binding, Organization, Policy


logger = logging.getLogger(__name__)

# Version 3 is required to read bindings that carry conditions
REQUESTED_POLICY_VERSION = 3

_CONDITION_FIELDS = ("expression", "title", "description", "location")

# RetryError means the client-side retry deadline ran out
_TIMEOUT_ERRORS = (google_exceptions.DeadlineExceeded, google_exceptions.RetryError)


class PolicyGateway(ABC):
    """Abstract interface for the policy backend to enable mocking."""

    @abstractmethod
    def get_organization(
        self, organization_id: str, timeout: float | None = None
    ) -> Organization:
        """Get an organization and its domain.

        Raises:
            PolicyFetchFailure: If the organization cannot be read.
        """
        pass

    @abstractmethod
    def get_policy(
        self, resource: str, timeout: float | None = None
    ) -> tuple[Policy, bytes]:
        """Get the IAM policy of a resource and its etag.

        Raises:
            PolicyFetchFailure: If the policy cannot be read.
        """
        pass

    @abstractmethod
    def set_policy(
        self,
        resource: str,
        policy: Policy,
        expected_etag: bytes,
        timeout: float | None = None,
    ) -> Policy:
        """Write an IAM policy if its etag is still ``expected_etag``.

        Returns:
            Policy: The policy as stored by the backend.

        Raises:
            ConcurrentModificationError: If the policy changed since read.
            PolicyWriteFailure: For any other write error.
        """
        pass


def binding_from_proto(binding: policy_pb2.Binding) -> Binding:
    """Convert a protobuf binding to a Binding."""
    condition = None
    if binding.HasField("condition"):
        condition = {
            name: getattr(binding.condition, name)
            for name in _CONDITION_FIELDS
            if getattr(binding.condition, name)
        }
    return Binding(
        role=binding.role, members=list(binding.members), condition=condition
    )


def policy_from_proto(policy: policy_pb2.Policy) -> Policy:
    """Convert a protobuf policy to a Policy."""
    return Policy(
        bindings=[binding_from_proto(b) for b in policy.bindings],
        etag=policy.etag,
        version=policy.version,
    )


def policy_to_proto(policy: Policy, etag: bytes) -> policy_pb2.Policy:
    """Convert a Policy to protobuf, stamped with ``etag``."""
    bindings = []
    for b in policy.bindings:
        kwargs: dict[str, Any] = {"role": b.role, "members": list(b.members)}
        if b.condition:
            kwargs["condition"] = expr_pb2.Expr(**b.condition)
        bindings.append(policy_pb2.Binding(**kwargs))
    return policy_pb2.Policy(version=policy.version, etag=etag, bindings=bindings)


class ResourceManagerGateway(PolicyGateway):
    """Cloud Resource Manager backed gateway.

    The organization's display name is its primary domain.
    """

    def __init__(self, client: Any = None) -> None:
        """Initialize the gateway.

        Args:
            client: Optional organizations client (for dependency injection).
        """
        self.client = client or resourcemanager_v3.OrganizationsClient()

    def get_organization(
        self, organization_id: str, timeout: float | None = None
    ) -> Organization:
        name = f"organizations/{organization_id}"
        try:
            org = self.client.get_organization(name=name, timeout=timeout)
        except _TIMEOUT_ERRORS as e:
            raise RemediationDeadlineExceeded(
                f"timed out reading organization: {e!s}",
                resource=name,
                stage="fetch_organization",
            ) from e
        except google_exceptions.GoogleAPICallError as e:
            raise PolicyFetchFailure(
                f"failed to get organization: {e!s}",
                resource=name,
                stage="fetch_organization",
            ) from e
        return Organization(id=organization_id, domain=org.display_name)

    def get_policy(
        self, resource: str, timeout: float | None = None
    ) -> tuple[Policy, bytes]:
        request = iam_policy_pb2.GetIamPolicyRequest(
            resource=resource,
            options=options_pb2.GetPolicyOptions(
                requested_policy_version=REQUESTED_POLICY_VERSION
            ),
        )
        try:
            response = self.client.get_iam_policy(request=request, timeout=timeout)
        except _TIMEOUT_ERRORS as e:
            raise RemediationDeadlineExceeded(
                f"timed out reading policy: {e!s}",
                resource=resource,
                stage="fetch_policy",
            ) from e
        except google_exceptions.GoogleAPICallError as e:
            raise PolicyFetchFailure(
                f"failed to get IAM policy: {e!s}",
                resource=resource,
                stage="fetch_policy",
            ) from e
        policy = policy_from_proto(response)
        return policy, policy.etag

    def set_policy(
        self,
        resource: str,
        policy: Policy,
        expected_etag: bytes,
        timeout: float | None = None,
    ) -> Policy:
        request = iam_policy_pb2.SetIamPolicyRequest(
            resource=resource, policy=policy_to_proto(policy, expected_etag)
        )
        try:
            response = self.client.set_iam_policy(request=request, timeout=timeout)
        except google_exceptions.Aborted as e:
            # Stale etag
            raise ConcurrentModificationError(
                f"policy changed since it was read: {e!s}",
                resource=resource,
                stage="write_policy",
            ) from e
        except _TIMEOUT_ERRORS as e:
            raise RemediationDeadlineExceeded(
                f"timed out writing policy: {e!s}",
                resource=resource,
                stage="write_policy",
            ) from e
        except google_exceptions.GoogleAPICallError as e:
            raise PolicyWriteFailure(
                f"failed to set IAM policy: {e!s}",
                resource=resource,
                stage="write_policy",
            ) from e
        return policy_from_proto(response)


class InMemoryGateway(PolicyGateway):
    """Gateway holding one organization and its policy in memory.

    Every successful write bumps the etag. Policies queued with
    ``queue_concurrent_write`` are applied just before the next
    ``set_policy`` call, as if another writer got there first.
    """

    def __init__(
        self,
        organization: Organization,
        bindings: list[Binding] | None = None,
    ) -> None:
        """Initialize the in-memory gateway.

        Args:
            organization: The organization served by this gateway.
            bindings: Initial bindings of the organization policy.
        """
        self.organization = organization
        self._generation = 1
        self.policy = Policy(bindings=copy.deepcopy(bindings or []), etag=self._etag())
        self.saved_policies: list[Policy] = []
        self.get_policy_calls = 0
        self.set_policy_calls = 0
        self.timeouts: list[float | None] = []
        self.fetch_error: Exception | None = None
        self.write_error: Exception | None = None
        self._pending_writes: list[list[Binding]] = []

    def _etag(self) -> bytes:
        return f"etag-{self._generation}".encode()

    def queue_concurrent_write(self, bindings: list[Binding]) -> None:
        """Simulate another writer changing the policy before our next write."""
        self._pending_writes.append(copy.deepcopy(bindings))

    def _store(self, bindings: list[Binding]) -> None:
        self._generation += 1
        self.policy = Policy(
            bindings=copy.deepcopy(bindings),
            etag=self._etag(),
            version=self.policy.version,
        )

    def get_organization(
        self, organization_id: str, timeout: float | None = None
    ) -> Organization:
        self.timeouts.append(timeout)
        if self.fetch_error:
            raise self.fetch_error
        if organization_id != self.organization.id:
            raise PolicyFetchFailure(
                "organization not found",
                resource=f"organizations/{organization_id}",
                stage="fetch_organization",
            )
        return self.organization

    def get_policy(
        self, resource: str, timeout: float | None = None
    ) -> tuple[Policy, bytes]:
        self.timeouts.append(timeout)
        self.get_policy_calls += 1
        if self.fetch_error:
            raise self.fetch_error
        if resource != self.organization.resource:
            raise PolicyFetchFailure(
                "resource not found", resource=resource, stage="fetch_policy"
            )
        return copy.deepcopy(self.policy), self.policy.etag

    def set_policy(
        self,
        resource: str,
        policy: Policy,
        expected_etag: bytes,
        timeout: float | None = None,
    ) -> Policy:
        self.timeouts.append(timeout)
        self.set_policy_calls += 1
        if self._pending_writes:
            self._store(self._pending_writes.pop(0))
        if self.write_error:
            raise self.write_error
        if expected_etag != self.policy.etag:
            raise ConcurrentModificationError(
                "etag mismatch", resource=resource, stage="write_policy"
            )
        self.saved_policies.append(copy.deepcopy(policy))
        self._store(policy.bindings)
        logger.info(f"MOCK: saved policy for {resource}")
        return copy.deepcopy(self.policy)
