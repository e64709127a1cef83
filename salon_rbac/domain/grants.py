from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from salon_rbac.domain.conditions import Conditions, matches
from salon_rbac.domain.permissions import Action, RoleKey, satisfies


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; every stored timestamp is UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def is_expired(expires_at: datetime | None, now: datetime) -> bool:
    return expires_at is not None and as_utc(expires_at) <= as_utc(now)


@dataclass(frozen=True)
class PrincipalRecord:
    id: str
    tenant_id: str
    is_active: bool
    branch_ids: frozenset[str] = frozenset()
    department_ids: frozenset[str] = frozenset()


@dataclass(frozen=True)
class PermissionRecord:
    id: str
    resource: str
    action: Action
    conditions: Conditions | None = None

    @property
    def key(self) -> tuple[str, Action]:
        return self.resource, self.action


@dataclass(frozen=True)
class RoleRecord:
    id: str
    tenant_id: str | None
    name: str
    description: str | None
    level: int
    system_key: RoleKey | None = None
    permissions: tuple[PermissionRecord, ...] = ()

    @property
    def is_super_admin(self) -> bool:
        return self.system_key is RoleKey.SUPER_ADMIN


@dataclass(frozen=True)
class RoleAssignmentRecord:
    role: RoleRecord
    granted_by: str | None
    granted_at: datetime
    expires_at: datetime | None = None

    def is_active_at(self, now: datetime) -> bool:
        return not is_expired(self.expires_at, now)


@dataclass(frozen=True)
class DirectGrantRecord:
    permission: PermissionRecord
    granted_by: str | None
    granted_at: datetime
    expires_at: datetime | None = None
    conditions: Conditions | None = None

    def is_active_at(self, now: datetime) -> bool:
        return not is_expired(self.expires_at, now)

    def effective_permission(self) -> PermissionRecord:
        if not self.conditions:
            return self.permission
        merged = dict(self.permission.conditions or {})
        merged.update(self.conditions)
        return PermissionRecord(
            id=self.permission.id,
            resource=self.permission.resource,
            action=self.permission.action,
            conditions=merged,
        )


@dataclass(frozen=True)
class EffectivePermission:
    """One ``(resource, action)`` entry of a principal's effective set.

    ``condition_sets`` is empty when at least one grant of the pair is
    unconditional. Otherwise it holds every distinct condition set seen for the
    pair, and the entry applies when any one of them matches the context.
    """

    id: str
    resource: str
    action: Action
    condition_sets: tuple[Conditions, ...] = ()

    @property
    def unconditional(self) -> bool:
        return not self.condition_sets

    def applies_to(self, context: Mapping[str, Any]) -> bool:
        if self.unconditional:
            return True
        return any(matches(conditions, context) for conditions in self.condition_sets)


@dataclass(frozen=True)
class EffectivePermissionSet:
    entries: tuple[EffectivePermission, ...] = field(default_factory=tuple)

    @classmethod
    def merge(cls, permissions: Iterable[PermissionRecord]) -> EffectivePermissionSet:
        first_ids: dict[tuple[str, Action], str] = {}
        unconditional: set[tuple[str, Action]] = set()
        condition_sets: dict[tuple[str, Action], list[Conditions]] = {}

        for permission in permissions:
            key = permission.key
            first_ids.setdefault(key, permission.id)
            if not permission.conditions:
                unconditional.add(key)
                continue
            seen = condition_sets.setdefault(key, [])
            if permission.conditions not in seen:
                seen.append(dict(permission.conditions))

        entries = [
            EffectivePermission(
                id=permission_id,
                resource=key[0],
                action=key[1],
                condition_sets=() if key in unconditional else tuple(condition_sets.get(key, [])),
            )
            for key, permission_id in first_ids.items()
        ]
        entries.sort(key=lambda item: (item.resource, item.action.level))
        return cls(entries=tuple(entries))

    def __iter__(self) -> Iterator[EffectivePermission]:
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    def for_resource(self, resource: str, required: Action) -> list[EffectivePermission]:
        return [
            item
            for item in self.entries
            if item.resource == resource and satisfies(item.action, required)
        ]
