from __future__ import annotations

import copy
import threading
from typing import Any, Iterable
from uuid import uuid4

from editorial_engine.core.errors import ConcurrentModification, DuplicateEntity, EntityNotFound

# 中文注释:
# - 与数据库唯一约束一一对应（见 backend/migrations）。
# - 任意列为 NULL 的行不参与唯一性判断（等价于 Postgres 的 UNIQUE 语义）。
UNIQUE_KEYS: dict[str, tuple[tuple[str, ...], ...]] = {
    "coi_overrides": (("manuscript_id", "reviewer_id"),),
    "invitation_reminders": (("invitation_id", "offset_days"),),
    "editorial_decisions": (("manuscript_id", "review_round"),),
    "reviewer_training_tasks": (("open_slot",),),
    "decision_actions": (("decision_id", "action_type"),),
    "scheduled_publications": (("manuscript_id",),),
    "follow_up_reminders": (("decision_id",),),
    "quality_reports": (("review_id",),),
    "reviewer_quality_profiles": (("reviewer_id",),),
    "review_assignments": (("invitation_id",),),
    "reviews": (("assignment_id",),),
}


class EntityStore:
    """
    实体存储适配器（外部协作者接口）。

    约定:
    - 行是 dict，必带 `id` 与整数 `version`。
    - update(expected_version=...) 为 compare-and-swap，版本不一致抛 ConcurrentModification。
    - list(**filters): 标量 -> 等值；None -> IS NULL；list/tuple/set -> IN。
    - create 违反唯一键抛 DuplicateEntity。
    """

    def get(self, table: str, row_id: str) -> dict[str, Any] | None:
        raise NotImplementedError

    def list(self, table: str, **filters: Any) -> list[dict[str, Any]]:
        raise NotImplementedError

    def create(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    def update(
        self,
        table: str,
        row_id: str,
        patch: dict[str, Any],
        *,
        expected_version: int | None = None,
    ) -> dict[str, Any]:
        raise NotImplementedError

    def delete(self, table: str, row_id: str) -> bool:
        """删除一行；行不存在时返回 False。"""
        raise NotImplementedError

    def require(self, table: str, row_id: str) -> dict[str, Any]:
        row = self.get(table, row_id)
        if not row:
            raise EntityNotFound(table, row_id)
        return row

    def first(self, table: str, **filters: Any) -> dict[str, Any] | None:
        rows = self.list(table, **filters)
        return rows[0] if rows else None


def _matches(row: dict[str, Any], filters: dict[str, Any]) -> bool:
    for key, expected in filters.items():
        actual = row.get(key)
        if expected is None:
            if actual is not None:
                return False
        elif isinstance(expected, (list, tuple, set, frozenset)):
            if actual not in expected:
                return False
        elif actual != expected:
            return False
    return True


class InMemoryEntityStore(EntityStore):
    """
    进程内实现：单测与单进程部署使用。

    中文注释: 所有读写在同一把锁内完成，并对行做深拷贝，调用方拿到的 dict 可随意修改。
    """

    def __init__(self, unique_keys: dict[str, tuple[tuple[str, ...], ...]] | None = None) -> None:
        self._tables: dict[str, dict[str, dict[str, Any]]] = {}
        self._order: dict[str, list[str]] = {}
        self._unique_keys = UNIQUE_KEYS if unique_keys is None else unique_keys
        self._lock = threading.RLock()

    def get(self, table: str, row_id: str) -> dict[str, Any] | None:
        with self._lock:
            row = self._tables.get(table, {}).get(str(row_id))
            return copy.deepcopy(row) if row else None

    def list(self, table: str, **filters: Any) -> list[dict[str, Any]]:
        with self._lock:
            rows = self._tables.get(table, {})
            return [
                copy.deepcopy(rows[row_id])
                for row_id in self._order.get(table, [])
                if _matches(rows[row_id], filters)
            ]

    def _check_unique(self, table: str, row: dict[str, Any], *, ignore_id: str | None = None) -> None:
        for columns in self._unique_keys.get(table, ()):
            key = {col: row.get(col) for col in columns}
            if any(value is None for value in key.values()):
                continue
            for other in self._tables.get(table, {}).values():
                if ignore_id is not None and other.get("id") == ignore_id:
                    continue
                if all(other.get(col) == value for col, value in key.items()):
                    raise DuplicateEntity(table, key)

    def create(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            payload = copy.deepcopy(row)
            payload["id"] = str(payload.get("id") or uuid4())
            payload["version"] = 1
            rows = self._tables.setdefault(table, {})
            if payload["id"] in rows:
                raise DuplicateEntity(table, {"id": payload["id"]})
            self._check_unique(table, payload)
            rows[payload["id"]] = payload
            self._order.setdefault(table, []).append(payload["id"])
            return copy.deepcopy(payload)

    def update(
        self,
        table: str,
        row_id: str,
        patch: dict[str, Any],
        *,
        expected_version: int | None = None,
    ) -> dict[str, Any]:
        with self._lock:
            rows = self._tables.get(table, {})
            current = rows.get(str(row_id))
            if current is None:
                raise EntityNotFound(table, str(row_id))
            if expected_version is not None and int(current.get("version") or 0) != int(expected_version):
                raise ConcurrentModification(table, str(row_id), expected_version)
            updated = {**current, **copy.deepcopy(patch)}
            updated["id"] = current["id"]
            updated["version"] = int(current.get("version") or 0) + 1
            self._check_unique(table, updated, ignore_id=current["id"])
            rows[current["id"]] = updated
            return copy.deepcopy(updated)

    def delete(self, table: str, row_id: str) -> bool:
        with self._lock:
            rows = self._tables.get(table, {})
            if rows.pop(str(row_id), None) is None:
                return False
            self._order[table].remove(str(row_id))
            return True

    def seed(self, table: str, rows: Iterable[dict[str, Any]]) -> list[dict[str, Any]]:
        return [self.create(table, row) for row in rows]
