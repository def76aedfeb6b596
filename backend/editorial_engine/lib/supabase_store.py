from __future__ import annotations

import logging
from typing import Any
from uuid import uuid4

from postgrest.exceptions import APIError

from editorial_engine.core.errors import (
    ConcurrentModification,
    DuplicateEntity,
    EntityNotFound,
    EntityStoreError,
)
from editorial_engine.lib.entity_store import EntityStore

logger = logging.getLogger("editorial_engine.supabase_store")

_UNCONDITIONAL_UPDATE_ATTEMPTS = 3


def _extract_rows(resp: Any) -> list[dict[str, Any]]:
    return getattr(resp, "data", None) or []


def _is_unique_violation(error: APIError) -> bool:
    # supabase/postgrest 的 APIError 在不同版本里字段不完全一致，这里尽量从字符串中兜底解析。
    code = str(getattr(error, "code", "") or "").lower()
    text = str(error).lower()
    return "23505" in code or "23505" in text or "duplicate key" in text


class SupabaseEntityStore(EntityStore):
    """
    基于 Supabase PostgREST 的实体存储。

    中文注释:
    - 乐观锁：update 带 `.eq("version", expected)`，返回 0 行即视为被并发修改。
    - 唯一约束冲突（23505）统一转换为 DuplicateEntity，供幂等逻辑使用。
    - 默认使用 service_role client（supabase_admin），避免 RLS 导致写入失败。
    """

    def __init__(self, client: Any = None) -> None:
        if client is None:
            from editorial_engine.lib.api_client import supabase_admin

            client = supabase_admin
        self.client = client

    def get(self, table: str, row_id: str) -> dict[str, Any] | None:
        try:
            resp = self.client.table(table).select("*").eq("id", str(row_id)).limit(1).execute()
        except APIError as e:
            raise EntityStoreError(f"{table} read failed: {e}") from e
        rows = _extract_rows(resp)
        return rows[0] if rows else None

    def list(self, table: str, **filters: Any) -> list[dict[str, Any]]:
        query = self.client.table(table).select("*")
        for key, value in filters.items():
            if value is None:
                query = query.is_(key, "null")
            elif isinstance(value, (list, tuple, set, frozenset)):
                query = query.in_(key, [v for v in value])
            else:
                query = query.eq(key, value)
        try:
            resp = query.order("created_at", desc=False).execute()
        except APIError as e:
            raise EntityStoreError(f"{table} list failed: {e}") from e
        return _extract_rows(resp)

    def create(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        payload = dict(row)
        payload["id"] = str(payload.get("id") or uuid4())
        payload["version"] = 1
        try:
            resp = self.client.table(table).insert(payload).execute()
        except APIError as e:
            if _is_unique_violation(e):
                raise DuplicateEntity(table) from e
            raise EntityStoreError(f"{table} insert failed: {e}") from e
        rows = _extract_rows(resp)
        return rows[0] if rows else payload

    def _cas_update(self, table: str, row_id: str, patch: dict[str, Any], version: int) -> list[dict[str, Any]]:
        payload = {**patch, "version": int(version) + 1}
        payload.pop("id", None)
        try:
            resp = (
                self.client.table(table)
                .update(payload)
                .eq("id", str(row_id))
                .eq("version", int(version))
                .execute()
            )
        except APIError as e:
            if _is_unique_violation(e):
                raise DuplicateEntity(table) from e
            raise EntityStoreError(f"{table} update failed: {e}") from e
        return _extract_rows(resp)

    def update(
        self,
        table: str,
        row_id: str,
        patch: dict[str, Any],
        *,
        expected_version: int | None = None,
    ) -> dict[str, Any]:
        if expected_version is not None:
            rows = self._cas_update(table, row_id, patch, expected_version)
            if rows:
                return rows[0]
            if self.get(table, row_id) is None:
                raise EntityNotFound(table, str(row_id))
            raise ConcurrentModification(table, str(row_id), expected_version)

        # 中文注释: 无条件更新同样走 CAS，只是由适配器自己读版本并有限次重试。
        for _attempt in range(_UNCONDITIONAL_UPDATE_ATTEMPTS):
            current = self.get(table, row_id)
            if current is None:
                raise EntityNotFound(table, str(row_id))
            rows = self._cas_update(table, row_id, patch, int(current.get("version") or 0))
            if rows:
                return rows[0]
            logger.info("update race on %s/%s, retrying", table, row_id)
        raise ConcurrentModification(table, str(row_id))

    def delete(self, table: str, row_id: str) -> bool:
        try:
            resp = self.client.table(table).delete().eq("id", str(row_id)).execute()
        except APIError as e:
            raise EntityStoreError(f"{table} delete failed: {e}") from e
        return bool(_extract_rows(resp))
