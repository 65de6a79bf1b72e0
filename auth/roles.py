"""
auth/roles.py -- Role hierarchy and permission predicates.

Roles form a total order: owner > admin > teacher > readonly. A role string
outside that set has level 0, so it satisfies only another unknown role.
Everything here is pure data and boolean functions.
"""

from __future__ import annotations

from enum import Enum


class Role(str, Enum):
    OWNER = "owner"
    ADMIN = "admin"
    TEACHER = "teacher"
    READONLY = "readonly"


ROLE_HIERARCHY: dict[str, int] = {
    Role.OWNER.value: 4,
    Role.ADMIN.value: 3,
    Role.TEACHER.value: 2,
    Role.READONLY.value: 1,
}


def role_level(role: str | Role | None) -> int:
    if isinstance(role, Role):
        role = role.value
    return ROLE_HIERARCHY.get(role or "", 0)


def has_permission(role: str | Role | None, required: str | Role) -> bool:
    """True when role ranks at or above required."""
    return role_level(role) >= role_level(required)


def can_manage_users(role: str) -> bool:
    return has_permission(role, Role.ADMIN)


def can_manage_organization(role: str) -> bool:
    return has_permission(role, Role.OWNER)


def can_manage_classes(role: str) -> bool:
    return has_permission(role, Role.ADMIN)


def can_manage_students(role: str) -> bool:
    return has_permission(role, Role.TEACHER)


def can_record_sessions(role: str) -> bool:
    return has_permission(role, Role.TEACHER)


def can_view_data(role: str) -> bool:
    return has_permission(role, Role.READONLY)


def can_manage_books(role: str) -> bool:
    return has_permission(role, Role.ADMIN)


def can_manage_settings(role: str) -> bool:
    return has_permission(role, Role.ADMIN)
