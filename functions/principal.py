#!/usr/bin/env python3
"""Principal matching for IAM policy bindings.

Only ``user:`` members are checked. A user may stay when the domain after
the last ``@`` of its email equals the organization's domain or one of the
allowed domains exactly. Service accounts, groups and domain members are
always kept.
"""

from collections.abc import Iterable
from dataclasses import dataclass

from policy import Binding


USER = "user"
KNOWN_TYPES = frozenset({"user", "serviceAccount", "group", "domain"})


@dataclass(frozen=True)
class Principal:
    """A parsed binding member such as ``user:bob@example.com``."""

    type: str
    identifier: str

    @property
    def domain(self) -> str:
        """Domain after the last ``@``, empty when there is none."""
        _, at, domain = self.identifier.rpartition("@")
        return domain if at else ""

    @property
    def is_user(self) -> bool:
        return self.type == USER


def parse_principal(member: str) -> Principal:
    """Parse a binding member into a Principal.

    Members without a known ``<type>:`` prefix (``allUsers`` for example)
    get the type ``other``.
    """
    member_type, sep, identifier = member.partition(":")
    if not sep or member_type not in KNOWN_TYPES:
        return Principal(type="other", identifier=member)
    return Principal(type=member_type, identifier=identifier)


def is_allowed(member: str, org_domain: str, allow_domains: Iterable[str]) -> bool:
    """Return True if the member may remain in a binding.

    Args:
        member: Binding member, e.g. ``user:bob@gmail.com``.
        org_domain: The organization's own domain.
        allow_domains: Extra domains whose users are allowed.
    """
    principal = parse_principal(member)
    if not principal.is_user:
        return True
    domain = principal.domain
    return domain == org_domain or domain in set(allow_domains)


def filter_members(
    members: Iterable[str], org_domain: str, allow_domains: Iterable[str]
) -> list[str]:
    """Keep the allowed members, in their original order."""
    allowed = frozenset(allow_domains)
    return [m for m in members if is_allowed(m, org_domain, allowed)]


def filter_bindings(
    bindings: Iterable[Binding], org_domain: str, allow_domains: Iterable[str]
) -> list[Binding]:
    """Filter the members of every binding.

    Bindings are never dropped, even when no member remains. The input
    bindings are not modified.
    """
    allowed = frozenset(allow_domains)
    return [
        Binding(
            role=b.role,
            members=filter_members(b.members, org_domain, allowed),
            condition=b.condition,
        )
        for b in bindings
    ]


def removed_members(before: Iterable[Binding], after: Iterable[Binding]) -> list[str]:
    """List the members present in ``before`` but gone from ``after``.

    Bindings are compared pairwise. A member removed from several bindings
    is listed once.
    """
    removed: list[str] = []
    for old, new in zip(before, after):
        kept = set(new.members)
        for member in old.members:
            if member not in kept and member not in removed:
                removed.append(member)
    return removed


def bindings_equal(a: list[Binding], b: list[Binding]) -> bool:
    """Compare bindings field by field (role, members, condition)."""
    if len(a) != len(b):
        return False
    return all(
        x.role == y.role and x.members == y.members and x.condition == y.condition
        for x, y in zip(a, b)
    )
