#!/usr/bin/env python3
"""Non-org IAM member remediator.

Removes users outside the organization's domain (and the configured
allow-list) from the organization IAM policy when Security Command Center
reports a NON_ORG_IAM_MEMBER finding.

This module can be run both as a Cloud Function and locally for testing.
The main business logic is separated from the function entry point for
better testability.
"""

import argparse
import base64
import json
import logging
import os
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import yaml

from errors import (
    ConcurrentModificationError,
    ConfigurationError,
    MalformedPayloadError,
    PolicyFetchFailure,
    PolicyWriteFailure,
    RemediationDeadlineExceeded,
    RemediationError,
    UnsupportedFindingCategoryError,
)
from finding import decode_pubsub_data, read_finding
from policy import Binding, Organization
from policy_gateway import InMemoryGateway, PolicyGateway, ResourceManagerGateway
from principal import bindings_equal, filter_bindings, removed_members


def setup_logging(level: str = "INFO") -> logging.Logger:
    """Set up logging configuration.

    Args:
        level: The logging level to use. Defaults to "INFO".

    Returns:
        logging.Logger: Configured logger instance.
    """
    logger = logging.getLogger(__name__)
    if not logger.handlers:  # Avoid duplicate handlers
        handler = logging.StreamHandler()
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        )
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    logger.setLevel(getattr(logging, level.upper()))
    return logger


log_level = "DEBUG" if os.environ.get("DEBUG", "false").lower() == "true" else "INFO"
logger = setup_logging(log_level)

ACTION = "remove_non_org_members"
SEVERITY_PROPERTY = "SeverityLevel"


def _env_list(name: str) -> list[str] | None:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return None
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"{name} is not valid JSON: {e!s}") from e
    if not isinstance(value, list):
        raise ConfigurationError(f"{name} must be a JSON list")
    return value


@dataclass
class RemediationConfig:
    """Configuration for the remediator."""

    allow_domains: frozenset[str] = field(default_factory=frozenset)
    resources: list[str] | None = None
    dry_run: bool = False
    max_attempts: int = 3
    timeout_seconds: float = 60.0

    def __post_init__(self) -> None:
        """Normalize and validate the configuration."""
        if isinstance(self.allow_domains, str) or not all(
            isinstance(d, str) for d in self.allow_domains or ()
        ):
            raise ConfigurationError("allow_domains must be a list of strings")
        for domain in self.allow_domains or ():
            if not domain or "@" in domain or ":" in domain:
                raise ConfigurationError(f"invalid allowed domain {domain!r}")
        self.allow_domains = frozenset(self.allow_domains or ())

        if self.resources is not None:
            if isinstance(self.resources, str) or not all(
                isinstance(r, str) for r in self.resources
            ):
                raise ConfigurationError("resources must be a list of strings")
            self.resources = list(self.resources)

        if not isinstance(self.max_attempts, int) or self.max_attempts < 1:
            raise ConfigurationError("max_attempts must be a positive integer")
        if not isinstance(self.timeout_seconds, (int, float)) or (
            self.timeout_seconds <= 0
        ):
            raise ConfigurationError("timeout_seconds must be positive")

    def allows_resource(self, resource: str) -> bool:
        """Return True if this remediation may touch ``resource``."""
        return not self.resources or resource in self.resources

    @classmethod
    def from_env(cls) -> "RemediationConfig":
        """Create config from environment variables.

        Values from the YAML file named by CONFIG_PATH are loaded first and
        environment variables override them.
        """
        config_dict: dict[str, Any] = {}
        config_path = os.environ.get("CONFIG_PATH")
        if config_path:
            config_dict.update(cls._load_yaml(config_path))

        allow_domains = _env_list("ALLOW_DOMAINS")
        if allow_domains is not None:
            config_dict["allow_domains"] = allow_domains
        resources = _env_list("RESOURCES")
        if resources is not None:
            config_dict["resources"] = resources

        if "DRY_RUN" in os.environ:
            dry_run_str = os.environ["DRY_RUN"].lower()
            config_dict["dry_run"] = dry_run_str in ("true", "1", "yes", "on")
        try:
            if "MAX_ATTEMPTS" in os.environ:
                config_dict["max_attempts"] = int(os.environ["MAX_ATTEMPTS"])
            if "TIMEOUT_SECONDS" in os.environ:
                config_dict["timeout_seconds"] = float(os.environ["TIMEOUT_SECONDS"])
        except ValueError as e:
            raise ConfigurationError(f"invalid numeric setting: {e!s}") from e

        return cls.from_dict(config_dict)

    @classmethod
    def from_dict(cls, config_dict: dict) -> "RemediationConfig":
        """Create config from dictionary."""
        try:
            return cls(**config_dict)
        except TypeError as e:
            raise ConfigurationError(f"unknown configuration key: {e!s}") from e

    @classmethod
    def from_file(cls, path: str) -> "RemediationConfig":
        """Create config from a YAML file."""
        return cls.from_dict(cls._load_yaml(path))

    @staticmethod
    def _load_yaml(path: str) -> dict[str, Any]:
        try:
            with Path(path).open() as f:
                content = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"cannot load config {path}: {e!s}") from e
        if content is None:
            return {}
        if not isinstance(content, dict):
            raise ConfigurationError(f"config {path} must be a mapping")
        return content


@dataclass
class Values:
    """Inputs of one remediation, taken from the finding."""

    organization_id: str

    @property
    def resource(self) -> str:
        return f"organizations/{self.organization_id}"


class RemediationResult:
    """Result of a remediation.

    This class stores the result of a remediation, including the success
    status, details, and error message.
    """

    def __init__(
        self,
        success: bool,
        details: dict[str, Any],
        error: str | None = None,
    ):
        """Initialize the RemediationResult."""
        self.success = success
        self.details = details
        self.error = error
        self.timestamp = datetime.now(timezone.utc).isoformat()

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "details": self.details,
            "error": self.error,
            "timestamp": self.timestamp,
        }


class RemoveNonOrgMembers:
    """Main business logic for the non-org member remediation.

    Reads the organization policy, drops user members whose domain is
    neither the organization's nor allowed, and writes the policy back
    only when it changed. The write is conditional on the etag read; on a
    concurrent change the policy is read and filtered again.
    """

    def __init__(
        self,
        config: RemediationConfig,
        gateway: PolicyGateway,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the remediator."""
        self.config = config
        self.gateway = gateway
        self.clock = clock
        self.logger = setup_logging(log_level)

    def execute(self, values: Values) -> RemediationResult:
        """Run one remediation.

        Args:
            values: The organization to remediate.

        Returns:
            RemediationResult: What was done.

        Raises:
            RemediationError: If a stage fails. Nothing has been written
                unless the error comes from the write itself.
        """
        resource = values.resource
        details: dict[str, Any] = {
            "action": ACTION,
            "resource": resource,
            "dry_run": self.config.dry_run,
        }

        if not self.config.allows_resource(resource):
            self.logger.info(f"{resource} is not in configured resources, skipping")
            return RemediationResult(
                True, {**details, "changed": False, "reason": "resource_not_allowed"}
            )

        deadline = self.clock() + self.config.timeout_seconds
        org = self._call(
            "fetch_organization",
            PolicyFetchFailure,
            resource,
            deadline,
            lambda t: self.gateway.get_organization(values.organization_id, timeout=t),
        )
        # Without a domain every user would be treated as non-org
        if not org.domain:
            raise PolicyFetchFailure(
                "organization has no domain",
                resource=resource,
                stage="fetch_organization",
            )
        self.logger.debug(f"Organization {org.id} has domain {org.domain}")

        for attempt in range(1, self.config.max_attempts + 1):
            policy, etag = self._call(
                "fetch_policy",
                PolicyFetchFailure,
                resource,
                deadline,
                lambda t: self.gateway.get_policy(resource, timeout=t),
            )
            bindings = filter_bindings(
                policy.bindings, org.domain, self.config.allow_domains
            )
            details["attempts"] = attempt

            if bindings_equal(policy.bindings, bindings):
                self.logger.info(f"No non-org members to remove from {resource}")
                return RemediationResult(
                    True, {**details, "changed": False, "removed_members": []}
                )

            removed = removed_members(policy.bindings, bindings)
            details.update(changed=True, removed_members=removed)

            if self.config.dry_run:
                self.logger.info(f"DRY RUN: Would remove {removed} from {resource}")
                return RemediationResult(True, details)

            try:
                self._call(
                    "write_policy",
                    PolicyWriteFailure,
                    resource,
                    deadline,
                    lambda t: self.gateway.set_policy(
                        resource, policy.with_bindings(bindings), etag, timeout=t
                    ),
                )
            except ConcurrentModificationError:
                if attempt >= self.config.max_attempts:
                    self.logger.error(
                        f"{resource} kept changing, giving up after {attempt} attempts"
                    )
                    raise
                self.logger.warning(
                    f"{resource} changed since it was read, retrying "
                    f"(attempt {attempt}/{self.config.max_attempts})"
                )
                continue

            self.logger.info(f"Removed {removed} from {resource}")
            return RemediationResult(True, details)

        # Unreachable, the loop either returns or raises
        raise ConcurrentModificationError(
            "retries exhausted", resource=resource, stage="write_policy"
        )

    def _call(
        self,
        stage: str,
        error_cls: type[RemediationError],
        resource: str,
        deadline: float,
        call: Callable[[float], Any],
    ) -> Any:
        """Run a gateway call with the time left before ``deadline``."""
        remaining = deadline - self.clock()
        if remaining <= 0:
            raise RemediationDeadlineExceeded(
                "deadline expired before the call was made",
                resource=resource,
                stage=stage,
            )
        try:
            return call(remaining)
        except RemediationError:
            raise
        except Exception as e:
            raise error_cls(
                f"{stage} failed: {e!s}", resource=resource, stage=stage
            ) from e


def handle_finding(
    raw: bytes | str, config: RemediationConfig, gateway: PolicyGateway
) -> RemediationResult:
    """Decode a finding notification and remediate it.

    Raises:
        RemediationError: If decoding or remediation fails.
    """
    finding = read_finding(raw)
    severity = (
        finding.source_property_str(SEVERITY_PROPERTY)
        if SEVERITY_PROPERTY in finding.source_properties
        else "unknown"
    )
    logger.info(
        f"Processing {finding.category} finding {finding.name} "
        f"(severity {severity}) for {finding.organization_resource}"
    )
    if not finding.is_active():
        logger.info(f"Finding is {finding.state.value}, remediating anyway")
    values = Values(organization_id=finding.organization_id)
    return RemoveNonOrgMembers(config, gateway).execute(values)


# Cloud Function entry point
def remove_non_org_members(event: dict[str, Any], _context: Any) -> dict[str, Any]:
    """Pub/Sub triggered Cloud Function - thin wrapper around business logic.

    Findings this function cannot handle are acknowledged. Any other error
    is raised so the runtime can redeliver the event.

    Args:
        event: The Pub/Sub event carrying the notification.
        _context: The event metadata (unused).

    Returns:
        Dict[str, Any]: Summary of the remediation.
    """
    try:
        raw = decode_pubsub_data(event)
        config = RemediationConfig.from_env()
        gateway = ResourceManagerGateway()
        return handle_finding(raw, config, gateway).to_dict()

    except (UnsupportedFindingCategoryError, MalformedPayloadError) as e:
        logger.warning(f"Discarding event: {e!s}")
        return {"success": False, "details": {"reason": "discarded"}, "error": str(e)}
    except Exception as e:
        logger.error(f"Error in remove_non_org_members: {e!s}", exc_info=True)
        raise


# Local execution support
SAMPLE_ORGANIZATION_ID = "1050000000008"
SAMPLE_DOMAIN = "cloudorg.com"


def create_sample_notification() -> dict:
    """Create a sample NON_ORG_IAM_MEMBER notification."""
    org = f"organizations/{SAMPLE_ORGANIZATION_ID}"
    finding_name = f"{org}/sources/1986930501000008034/findings/29f4085b95329980"
    return {
        "notificationConfigName": f"{org}/notificationConfigs/noticonf-active-001-id",
        "finding": {
            "name": finding_name,
            "parent": f"{org}/sources/1986930501000008034",
            "resourceName": f"//cloudresourcemanager.googleapis.com/{org}",
            "state": "ACTIVE",
            "category": "NON_ORG_IAM_MEMBER",
            "sourceProperties": {
                "ReactivationCount": 0,
                "SeverityLevel": "High",
                "ProjectId": "(none)",
                "ScannerName": "IAM_SCANNER",
            },
            "securityMarks": {"name": f"{finding_name}/securityMarks"},
            "eventTime": "2019-10-10T09:30:24.033Z",
            "createTime": "2019-09-13T22:51:00.516Z",
        },
    }


def create_sample_event() -> dict:
    """Create a sample Pub/Sub event for testing.

    Returns:
        Dict: A sample Pub/Sub event.
    """
    data = json.dumps(create_sample_notification()).encode("utf-8")
    return {
        "@type": "type.googleapis.com/google.pubsub.v1.PubsubMessage",
        "data": base64.b64encode(data).decode("ascii"),
        "attributes": {},
    }


def create_sample_gateway() -> InMemoryGateway:
    """Create an in-memory gateway with a policy holding non-org users."""
    return InMemoryGateway(
        Organization(id=SAMPLE_ORGANIZATION_ID, domain=SAMPLE_DOMAIN),
        [
            Binding(
                role="roles/editor",
                members=[
                    "user:anyone@google.com",
                    "user:bob@gmail.com",
                    f"user:ddgo@{SAMPLE_DOMAIN}",
                    "group:admins@example.com",
                ],
            ),
            Binding(role="roles/viewer", members=[f"user:mans@{SAMPLE_DOMAIN}"]),
        ],
    )


def main() -> Any:
    """Run function for local execution.

    This function is used to test the remediator locally. It can be run with
    the following command:

    python remediator.py --event notification.json --config config.yaml
    """
    parser = argparse.ArgumentParser(description="Non-org IAM member remediator")
    parser.add_argument("--config", help="Configuration file (YAML)")
    parser.add_argument("--event", help="Notification file (JSON)")
    parser.add_argument("--dry-run", action="store_true", help="Dry run mode")
    parser.add_argument("--log-level", default="INFO", help="Log level")

    args = parser.parse_args()

    local_logger = setup_logging(args.log_level)

    if args.config:
        config = RemediationConfig.from_file(args.config)
    else:
        config = RemediationConfig.from_env()
    if args.dry_run:
        config.dry_run = True

    if args.event:
        raw = Path(args.event).read_bytes()
    else:
        local_logger.info("No event file provided, using sample notification")
        raw = json.dumps(create_sample_notification()).encode("utf-8")

    # Use the real API if credentials are available, otherwise in memory
    gateway: PolicyGateway
    if os.environ.get("GOOGLE_APPLICATION_CREDENTIALS"):
        gateway = ResourceManagerGateway()
        local_logger.info("Using Cloud Resource Manager gateway")
    else:
        local_logger.info("Using in-memory gateway for local testing")
        gateway = create_sample_gateway()

    try:
        result = handle_finding(raw, config, gateway)
    except RemediationError as e:
        local_logger.error(f"Remediation failed: {e!s}")
        return {"success": False, "error": str(e), "retryable": e.retryable}

    local_logger.info(f"Processing complete: {result.to_dict()}")
    return result.to_dict()


if __name__ == "__main__":
    main()
