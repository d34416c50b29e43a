#!/usr/bin/env python3
"""Error types raised by the non-org member remediation.

Every error carries a ``retryable`` flag so the entry point can decide
whether to acknowledge the event or hand it back to the runtime.
"""


class RemediationError(Exception):
    """Base class for remediation errors."""

    retryable = False

    def __init__(
        self,
        message: str,
        resource: str | None = None,
        stage: str | None = None,
    ) -> None:
        """Initialize the error.

        Args:
            message: Human readable description.
            resource: Resource name the failure relates to, if any.
            stage: Remediation stage that failed (fetch_organization, ...).
        """
        super().__init__(message)
        self.resource = resource
        self.stage = stage

    def __str__(self) -> str:
        context = ", ".join(
            f"{k}={v}"
            for k, v in (("resource", self.resource), ("stage", self.stage))
            if v
        )
        message = super().__str__()
        return f"{message} ({context})" if context else message


class UnsupportedFindingCategoryError(RemediationError):
    """The finding is not meant for this remediation."""


class MalformedPayloadError(RemediationError):
    """The notification payload could not be decoded."""


class ConfigurationError(RemediationError):
    """The remediation configuration is invalid."""


class PolicyFetchFailure(RemediationError):
    """Reading the organization or its IAM policy failed."""

    retryable = True


class PolicyWriteFailure(RemediationError):
    """Writing the IAM policy failed."""

    retryable = True


class ConcurrentModificationError(PolicyWriteFailure):
    """The policy changed between read and write (stale etag)."""


class RemediationDeadlineExceeded(RemediationError):
    """The invocation ran out of time before the remediation completed."""

    retryable = True
