from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Iterable, Mapping

from editorial_engine.core.errors import EntityStoreError

logger = logging.getLogger("editorial_engine.roles")

SYSTEM_ACTOR_ID = "system"


class Role(str, Enum):
    AUTHOR = "author"
    REVIEWER = "reviewer"
    EDITOR = "editor"
    ADMIN = "admin"
    SYSTEM = "system"


# 中文注释: 一个用户可能同时拥有多个角色，role_of 取权限最高者。
_ROLE_PRECEDENCE: tuple[Role, ...] = (Role.ADMIN, Role.EDITOR, Role.REVIEWER, Role.AUTHOR)

# user_profiles.roles 中的历史/别名角色
_ROLE_ALIASES = {
    "managing_editor": Role.EDITOR,
    "assistant_editor": Role.EDITOR,
    "editor_in_chief": Role.EDITOR,
    "production_editor": Role.EDITOR,
    "super_admin": Role.ADMIN,
}


def normalize_roles(raw: Iterable[Any] | str | None) -> set[Role]:
    if raw is None:
        return set()
    if isinstance(raw, str):
        raw = [raw]
    out: set[Role] = set()
    for item in raw:
        key = str(item or "").strip().lower()
        if not key:
            continue
        if key in _ROLE_ALIASES:
            out.add(_ROLE_ALIASES[key])
            continue
        try:
            out.add(Role(key))
        except ValueError:
            continue
    return out


def primary_role(roles: Iterable[Role]) -> Role | None:
    role_set = set(roles)
    for role in _ROLE_PRECEDENCE:
        if role in role_set:
            return role
    return None


class RoleProvider:
    """
    Identity/Role Provider: roleOf(userId) -> role
    """

    def role_of(self, user_id: str) -> Role | None:
        raise NotImplementedError


class StaticRoleProvider(RoleProvider):
    def __init__(self, roles: Mapping[str, Role | str] | None = None) -> None:
        self._roles: dict[str, Role] = {}
        for user_id, role in (roles or {}).items():
            self.assign(user_id, role)

    def assign(self, user_id: str, role: Role | str) -> None:
        self._roles[str(user_id)] = Role(role)

    def role_of(self, user_id: str) -> Role | None:
        if str(user_id) == SYSTEM_ACTOR_ID:
            return Role.SYSTEM
        return self._roles.get(str(user_id))


class StoreRoleProvider(RoleProvider):
    """
    从 user_profiles.roles 读取角色（与主站 profile 表保持一致）。

    中文注释: 读取失败时返回 None，由状态机统一按 Unauthorized 处理。
    """

    def __init__(self, store: Any) -> None:
        self.store = store

    def role_of(self, user_id: str) -> Role | None:
        if str(user_id) == SYSTEM_ACTOR_ID:
            return Role.SYSTEM
        try:
            profile = self.store.get("user_profiles", str(user_id))
        except EntityStoreError as e:
            logger.warning("role lookup failed for %s: %s", user_id, e)
            return None
        if not profile:
            return None
        return primary_role(normalize_roles(profile.get("roles")))
