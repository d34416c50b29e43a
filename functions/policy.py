#!/usr/bin/env python3
"""IAM policy data model shared by the matcher, gateway and remediator."""

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class Organization:
    """An organization and its primary domain."""

    id: str
    domain: str

    @property
    def resource(self) -> str:
        """Resource name of the organization, ``organizations/<id>``."""
        return f"organizations/{self.id}"


@dataclass
class Binding:
    """A role and the members granted it."""

    role: str
    members: list[str] = field(default_factory=list)
    condition: dict[str, Any] | None = None


@dataclass
class Policy:
    """An IAM policy document.

    ``etag`` is the version token returned on read; a write carrying a
    stale etag is rejected.
    """

    bindings: list[Binding] = field(default_factory=list)
    etag: bytes = b""
    version: int = 1

    def with_bindings(self, bindings: list[Binding]) -> "Policy":
        """Return a copy of this policy with other bindings."""
        return Policy(bindings=bindings, etag=self.etag, version=self.version)
