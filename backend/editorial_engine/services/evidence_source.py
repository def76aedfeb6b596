from __future__ import annotations

from datetime import date, datetime
from typing import Any, Iterable

from editorial_engine.core.clock import parse_datetime
from editorial_engine.lib.entity_store import EntityStore
from editorial_engine.models.conflict import (
    Affiliation,
    Collaboration,
    DeclaredConflict,
    FinancialInterest,
)


class ConflictEvidenceSource:
    """
    COI 事实源（只读）。

    中文注释: 冲突引擎把这里返回的数据当作“唯一事实”，每次评估都重新读取，不做跨评估缓存。
    """

    def affiliations(self, person_id: str) -> list[Affiliation]:
        raise NotImplementedError

    def collaborations(self, person_id: str) -> list[Collaboration]:
        raise NotImplementedError

    def financial_interests(self, person_id: str) -> list[FinancialInterest]:
        raise NotImplementedError

    def declared_conflicts(self, reviewer_id: str) -> list[DeclaredConflict]:
        raise NotImplementedError


class StaticEvidenceSource(ConflictEvidenceSource):
    """进程内事实源（测试、脚本导入数据）"""

    def __init__(
        self,
        *,
        affiliations: Iterable[Affiliation] = (),
        collaborations: Iterable[Collaboration] = (),
        financial_interests: Iterable[FinancialInterest] = (),
        declared_conflicts: Iterable[DeclaredConflict] = (),
    ) -> None:
        self._affiliations = list(affiliations)
        self._collaborations = list(collaborations)
        self._financial = list(financial_interests)
        self._declared = list(declared_conflicts)

    def add_affiliation(self, affiliation: Affiliation) -> None:
        self._affiliations.append(affiliation)

    def add_collaboration(self, collaboration: Collaboration) -> None:
        self._collaborations.append(collaboration)

    def add_financial_interest(self, interest: FinancialInterest) -> None:
        self._financial.append(interest)

    def add_declared_conflict(self, declared: DeclaredConflict) -> None:
        self._declared.append(declared)

    def affiliations(self, person_id: str) -> list[Affiliation]:
        return [a for a in self._affiliations if a.person_id == person_id]

    def collaborations(self, person_id: str) -> list[Collaboration]:
        return [c for c in self._collaborations if person_id in (c.person_a_id, c.person_b_id)]

    def financial_interests(self, person_id: str) -> list[FinancialInterest]:
        return [f for f in self._financial if f.person_id == person_id]

    def declared_conflicts(self, reviewer_id: str) -> list[DeclaredConflict]:
        return [d for d in self._declared if d.reviewer_id == reviewer_id]


def _as_date(raw: Any) -> date | None:
    if isinstance(raw, datetime):
        return raw.date()
    if raw is None or isinstance(raw, date):
        return raw
    parsed = parse_datetime(raw)
    if parsed is not None:
        return parsed.date()
    try:
        return date.fromisoformat(str(raw)[:10])
    except ValueError:
        return None


class StoreEvidenceSource(ConflictEvidenceSource):
    """
    从实体存储读取 COI 事实：
    - institutional_affiliations
    - collaboration_networks（person_a_id / person_b_id 双向）
    - financial_interests
    - declared_conflicts
    """

    def __init__(self, store: EntityStore) -> None:
        self.store = store

    def affiliations(self, person_id: str) -> list[Affiliation]:
        rows = self.store.list("institutional_affiliations", person_id=person_id)
        out: list[Affiliation] = []
        for row in rows:
            out.append(
                Affiliation(
                    person_id=str(row.get("person_id")),
                    institution=str(row.get("institution") or row.get("institution_name") or ""),
                    department=row.get("department"),
                    start_date=_as_date(row.get("start_date")),
                    end_date=_as_date(row.get("end_date")),
                )
            )
        return [a for a in out if a.institution]

    def collaborations(self, person_id: str) -> list[Collaboration]:
        rows = [
            *self.store.list("collaboration_networks", person_a_id=person_id),
            *self.store.list("collaboration_networks", person_b_id=person_id),
        ]
        seen: set[str] = set()
        out: list[Collaboration] = []
        for row in rows:
            row_id = str(row.get("id"))
            if row_id in seen:
                continue
            seen.add(row_id)
            last = _as_date(row.get("last_collaboration_date"))
            if last is None:
                continue
            out.append(
                Collaboration(
                    person_a_id=str(row.get("person_a_id")),
                    person_b_id=str(row.get("person_b_id")),
                    relationship_type=str(row.get("relationship_type") or "coauthor"),
                    collaboration_count=int(row.get("collaboration_count") or 1),
                    first_collaboration_date=_as_date(row.get("first_collaboration_date")),
                    last_collaboration_date=last,
                    confidence_score=row.get("confidence_score"),
                )
            )
        return out

    def financial_interests(self, person_id: str) -> list[FinancialInterest]:
        return [
            FinancialInterest(
                person_id=str(row.get("person_id")),
                entity=str(row.get("entity") or ""),
                relation=str(row.get("relation") or "collaboration"),
                description=row.get("description"),
            )
            for row in self.store.list("financial_interests", person_id=person_id)
            if row.get("entity")
        ]

    def declared_conflicts(self, reviewer_id: str) -> list[DeclaredConflict]:
        return [
            DeclaredConflict.model_validate(row)
            for row in self.store.list("declared_conflicts", reviewer_id=reviewer_id, status="active")
        ]
