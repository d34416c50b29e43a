#!/usr/bin/env python3
"""Security Command Center finding notifications.

This module decodes the notification published to Pub/Sub by a Security
Command Center notification config and turns it into a ``Finding`` for
the non-org IAM member remediation.
"""

import base64
import binascii
import json
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from errors import MalformedPayloadError, UnsupportedFindingCategoryError


NON_ORG_IAM_MEMBER = "NON_ORG_IAM_MEMBER"

_ORGANIZATION_PATH = re.compile(r"(?:^|/)organizations/(\d+)(?:/|$)")


class FindingState(str, Enum):
    """Lifecycle state reported for a finding."""

    STATE_UNSPECIFIED = "STATE_UNSPECIFIED"
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"


@dataclass
class Finding:
    """A decoded finding of the category this remediation handles."""

    name: str
    organization_id: str
    category: str
    state: FindingState = FindingState.STATE_UNSPECIFIED
    source_properties: dict[str, Any] = field(default_factory=dict)
    create_time: str | None = None
    event_time: str | None = None
    parent: str | None = None
    resource_name: str | None = None
    notification_config_name: str | None = None
    security_marks_name: str | None = None

    @property
    def organization_resource(self) -> str:
        """Resource name of the organization the finding belongs to."""
        return f"organizations/{self.organization_id}"

    def is_active(self) -> bool:
        """Return True if the finding is currently active."""
        return self.state == FindingState.ACTIVE

    def source_property_str(self, key: str) -> str:
        """Get a string source property.

        Raises:
            MalformedPayloadError: If the key is absent or not a string.
        """
        if key not in self.source_properties:
            raise MalformedPayloadError(
                f"source property {key!r} missing", resource=self.name
            )
        value = self.source_properties[key]
        if not isinstance(value, str):
            raise MalformedPayloadError(
                f"source property {key!r} is not a string: {value!r}",
                resource=self.name,
            )
        return value


def organization_id_from_path(path: str | None) -> str:
    """Extract the numeric organization id from a resource path.

    Accepts relative names (``organizations/123/sources/...``) and full
    resource names (``//cloudresourcemanager.googleapis.com/organizations/123``).

    Raises:
        MalformedPayloadError: If the path has no organization segment.
    """
    match = _ORGANIZATION_PATH.search(path or "")
    if not match:
        raise MalformedPayloadError(f"no organization id in path {path!r}")
    return match.group(1)


def read_finding(raw: bytes | str) -> Finding:
    """Decode a notification payload into a Finding.

    Args:
        raw: JSON notification, as published by the notification config.

    Returns:
        Finding: The decoded finding.

    Raises:
        MalformedPayloadError: If the payload is not a valid notification.
        UnsupportedFindingCategoryError: If the finding has another category.
    """
    try:
        envelope = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise MalformedPayloadError(f"invalid notification JSON: {e!s}") from e

    if not isinstance(envelope, dict) or not isinstance(
        envelope.get("finding"), dict
    ):
        raise MalformedPayloadError("notification has no finding object")
    finding = envelope["finding"]

    category = finding.get("category")
    if category != NON_ORG_IAM_MEMBER:
        raise UnsupportedFindingCategoryError(
            f"unsupported finding category {category!r}",
            resource=finding.get("name"),
        )

    # The first path that names an organization wins
    organization_id = None
    for key in ("parent", "resourceName", "name"):
        try:
            organization_id = organization_id_from_path(finding.get(key))
            break
        except MalformedPayloadError:
            continue
    if organization_id is None:
        raise MalformedPayloadError(
            "finding does not reference an organization",
            resource=finding.get("name"),
        )

    source_properties = finding.get("sourceProperties") or {}
    if not isinstance(source_properties, dict):
        raise MalformedPayloadError(
            "sourceProperties is not an object", resource=finding.get("name")
        )

    try:
        state = FindingState(finding.get("state") or "STATE_UNSPECIFIED")
    except ValueError as e:
        raise MalformedPayloadError(
            f"unknown finding state {finding.get('state')!r}",
            resource=finding.get("name"),
        ) from e

    return Finding(
        name=str(finding.get("name", "")),
        organization_id=organization_id,
        category=category,
        state=state,
        source_properties=source_properties,
        create_time=finding.get("createTime"),
        event_time=finding.get("eventTime"),
        parent=finding.get("parent"),
        resource_name=finding.get("resourceName"),
        notification_config_name=envelope.get("notificationConfigName"),
        security_marks_name=(finding.get("securityMarks") or {}).get("name"),
    )


def decode_pubsub_data(event: dict[str, Any]) -> bytes:
    """Return the decoded ``data`` field of a Pub/Sub background event.

    Raises:
        MalformedPayloadError: If ``data`` is missing or not valid base64.
    """
    data = event.get("data") if isinstance(event, dict) else None
    if not data:
        raise MalformedPayloadError("Pub/Sub event has no data")
    try:
        return base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError, TypeError) as e:
        raise MalformedPayloadError(f"Pub/Sub data is not base64: {e!s}") from e
