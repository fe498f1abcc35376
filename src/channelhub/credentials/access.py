"""Tenant role checks performed before any credential read or write."""

from __future__ import annotations

import asyncio
from collections.abc import Iterable, Mapping
from enum import Enum
from typing import Protocol

from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from channelhub.core.db.models import TenantMembership
from channelhub.core.errors import UnauthorizedError


class MembershipRole(str, Enum):
    OWNER = "OWNER"
    ADMIN = "ADMIN"
    AGENT = "AGENT"


MANAGER_ROLES = frozenset({MembershipRole.OWNER, MembershipRole.ADMIN})
ANY_ROLE = frozenset(MembershipRole)


class AccessPolicy(Protocol):
    async def require_role(
        self, user_id: str, tenant_id: str, roles: Iterable[MembershipRole]
    ) -> MembershipRole:
        ...


def _check(
    role: MembershipRole | None, roles: Iterable[MembershipRole], tenant_id: str
) -> MembershipRole:
    if role is None:
        raise UnauthorizedError(f"no membership in tenant {tenant_id}")
    if role not in frozenset(roles):
        raise UnauthorizedError(f"role {role.value} cannot manage channel credentials")
    return role


class StaticAccessPolicy:
    """Memberships supplied up front as ``{(tenant_id, user_id): role}``."""

    def __init__(self, memberships: Mapping[tuple[str, str], MembershipRole]) -> None:
        self._memberships = dict(memberships)

    async def require_role(
        self, user_id: str, tenant_id: str, roles: Iterable[MembershipRole]
    ) -> MembershipRole:
        return _check(self._memberships.get((tenant_id, user_id)), roles, tenant_id)


class SqlAccessPolicy:
    """Reads memberships from the ``tenant_memberships`` table."""

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    async def require_role(
        self, user_id: str, tenant_id: str, roles: Iterable[MembershipRole]
    ) -> MembershipRole:
        role = await asyncio.to_thread(self._lookup, user_id, tenant_id)
        return _check(role, roles, tenant_id)

    def _lookup(self, user_id: str, tenant_id: str) -> MembershipRole | None:
        statement = select(TenantMembership).where(
            TenantMembership.tenant_id == tenant_id,
            TenantMembership.user_id == user_id,
        )
        with Session(self._engine) as session:
            membership = session.exec(statement).first()
        return MembershipRole(membership.role) if membership is not None else None
