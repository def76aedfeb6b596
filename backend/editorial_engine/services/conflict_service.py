from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Any, Iterable, Optional

from editorial_engine.core.clock import Clock, SystemClock, parse_datetime
from editorial_engine.core.config import ConflictConfig
from editorial_engine.core.errors import DuplicateEntity, PreconditionNotMet, Unauthorized
from editorial_engine.core.roles import Role, RoleProvider
from editorial_engine.lib.entity_store import EntityStore
from editorial_engine.models.conflict import (
    ConflictRecord,
    ConflictSeverity,
    ConflictStatistics,
    ConflictType,
    EligibilityOverride,
    ReviewerEligibility,
)
from editorial_engine.models.manuscript import Manuscript
from editorial_engine.services.evidence_source import ConflictEvidenceSource

logger = logging.getLogger("editorial_engine.conflicts")


def _years_before(today: date, years: int) -> date:
    try:
        return today.replace(year=today.year - years)
    except ValueError:
        # 2 月 29 日
        return today.replace(year=today.year - years, day=28)


def _norm(text: str | None) -> str:
    return " ".join(str(text or "").lower().split())


class ConflictOfInterestEngine:
    """
    利益冲突检测引擎。

    中文注释:
    - ConflictRecord 每次都由证据源现算，不落库；唯一持久化的是 coi_overrides。
    - override 记录它放行时覆盖了哪些 blocking 冲突（类型:作者）；出现新的 blocking 冲突会重新拦截，
      但 override 行本身保留。
    """

    def __init__(
        self,
        store: EntityStore,
        evidence: ConflictEvidenceSource,
        roles: RoleProvider,
        *,
        clock: Clock | None = None,
        config: ConflictConfig | None = None,
    ) -> None:
        self.store = store
        self.evidence = evidence
        self.roles = roles
        self.clock = clock or SystemClock()
        self.config = config or ConflictConfig()

    # === 评估 ===

    def evaluate(self, manuscript_id: str, reviewer_ids: Iterable[str]) -> list[ReviewerEligibility]:
        manuscript = Manuscript.from_row(self.store.require("manuscripts", manuscript_id))
        seen: set[str] = set()
        out: list[ReviewerEligibility] = []
        for reviewer_id in reviewer_ids:
            rid = str(reviewer_id)
            if rid in seen:
                continue
            seen.add(rid)
            out.append(self._eligibility(manuscript, rid))
        return out

    def evaluate_reviewer(self, manuscript_id: str, reviewer_id: str) -> ReviewerEligibility:
        return self.evaluate(manuscript_id, [reviewer_id])[0]

    def detect_conflicts(self, manuscript: Manuscript, reviewer_id: str) -> list[ConflictRecord]:
        today = self.clock.now().date()
        author_ids = [a for a in dict.fromkeys(manuscript.author_ids)]
        conflicts: list[ConflictRecord] = []
        conflicts.extend(self._detect_self_review(reviewer_id, author_ids))
        conflicts.extend(self._detect_institutional(reviewer_id, author_ids, today))
        conflicts.extend(self._detect_coauthorship(reviewer_id, author_ids, today))
        conflicts.extend(self._detect_financial(reviewer_id, author_ids))
        conflicts.extend(self._detect_declared(reviewer_id, author_ids))
        return conflicts

    def risk_score(self, conflicts: list[ConflictRecord]) -> int:
        """
        取各冲突 severity 权重 * 类型系数 的最大值；任一 blocking 直接 100。
        """
        if not conflicts:
            return 0
        if any(c.is_blocking for c in conflicts):
            return 100
        best = 0.0
        for conflict in conflicts:
            weight = float(self.config.severity_weights.get(conflict.severity.value, 0.0))
            multiplier = float(self.config.type_multipliers.get(conflict.conflict_type.value, 1.0))
            best = max(best, weight * multiplier)
        return int(min(99, round(best)))

    def _eligibility(self, manuscript: Manuscript, reviewer_id: str) -> ReviewerEligibility:
        conflicts = self.detect_conflicts(manuscript, reviewer_id)
        blocking = {c.fingerprint for c in conflicts if c.is_blocking}
        override = self.get_override(manuscript.id, reviewer_id)

        if not blocking:
            is_eligible = True
        elif override is None:
            is_eligible = False
        else:
            is_eligible = blocking.issubset(set(override.covered_conflicts))

        return ReviewerEligibility(
            reviewer_id=reviewer_id,
            is_eligible=is_eligible,
            conflicts=conflicts,
            risk_score=self.risk_score(conflicts),
            override=override,
        )

    # === 检测规则 ===

    def _detect_self_review(self, reviewer_id: str, author_ids: list[str]) -> list[ConflictRecord]:
        if reviewer_id not in author_ids:
            return []
        return [
            ConflictRecord(
                reviewer_id=reviewer_id,
                author_id=reviewer_id,
                conflict_type=ConflictType.OTHER,
                severity=ConflictSeverity.BLOCKING,
                description="Reviewer is an author of the manuscript",
                evidence={"rule": "self_review"},
            )
        ]

    def _detect_institutional(self, reviewer_id: str, author_ids: list[str], today: date) -> list[ConflictRecord]:
        reviewer_affiliations = self.evidence.affiliations(reviewer_id)
        if not reviewer_affiliations:
            return []
        cutoff = _years_before(today, self.config.institutional_recency_years)

        out: list[ConflictRecord] = []
        for author_id in author_ids:
            if author_id == reviewer_id:
                continue
            best: Optional[ConflictRecord] = None
            for mine in reviewer_affiliations:
                for theirs in self.evidence.affiliations(author_id):
                    if _norm(mine.institution) != _norm(theirs.institution):
                        continue
                    evidence = {
                        "institution": mine.institution,
                        "reviewer_period": [mine.start_date, mine.end_date],
                        "author_period": [theirs.start_date, theirs.end_date],
                    }
                    if mine.end_date is None and theirs.end_date is None:
                        candidate = ConflictRecord(
                            reviewer_id=reviewer_id,
                            author_id=author_id,
                            conflict_type=ConflictType.INSTITUTIONAL_CURRENT,
                            severity=ConflictSeverity.HIGH,
                            description=f"Both currently affiliated with {mine.institution}",
                            evidence=evidence,
                        )
                    else:
                        overlap_start = max(mine.start_date or date.min, theirs.start_date or date.min)
                        overlap_end = min(mine.end_date or today, theirs.end_date or today)
                        if overlap_start > overlap_end or overlap_end < cutoff:
                            continue
                        candidate = ConflictRecord(
                            reviewer_id=reviewer_id,
                            author_id=author_id,
                            conflict_type=ConflictType.INSTITUTIONAL_RECENT,
                            severity=ConflictSeverity.MEDIUM,
                            description=f"Overlapping affiliation with {mine.institution} until {overlap_end.isoformat()}",
                            evidence={**evidence, "overlap_end": overlap_end},
                        )
                    if best is None or candidate.severity.rank > best.severity.rank:
                        best = candidate
            if best is not None:
                out.append(best)
        return out

    def _detect_coauthorship(self, reviewer_id: str, author_ids: list[str], today: date) -> list[ConflictRecord]:
        cfg = self.config
        lookback = _years_before(today, cfg.coauthorship_lookback_years)
        blocking_cutoff = _years_before(today, cfg.coauthorship_blocking_years)
        recent_cutoff = _years_before(today, cfg.coauthorship_recent_years)
        authors = set(author_ids) - {reviewer_id}

        out: list[ConflictRecord] = []
        for collab in self.evidence.collaborations(reviewer_id):
            author_id = collab.other(reviewer_id)
            if author_id not in authors:
                continue
            last = collab.last_collaboration_date
            if last < lookback:
                continue

            if last >= blocking_cutoff:
                ctype, severity = ConflictType.COAUTHORSHIP_RECENT, ConflictSeverity.BLOCKING
            elif last >= recent_cutoff:
                ctype, severity = ConflictType.COAUTHORSHIP_RECENT, ConflictSeverity.HIGH
            elif collab.collaboration_count >= cfg.frequent_high_publications:
                ctype, severity = ConflictType.COAUTHORSHIP_FREQUENT, ConflictSeverity.HIGH
            elif collab.collaboration_count >= cfg.frequent_min_publications:
                ctype, severity = ConflictType.COAUTHORSHIP_FREQUENT, ConflictSeverity.MEDIUM
            else:
                ctype, severity = ConflictType.COAUTHORSHIP_RECENT, ConflictSeverity.MEDIUM

            out.append(
                ConflictRecord(
                    reviewer_id=reviewer_id,
                    author_id=author_id,
                    conflict_type=ctype,
                    severity=severity,
                    description=(
                        f"Co-authorship history: {collab.collaboration_count} publications, last in {last.year}"
                    ),
                    evidence={
                        "collaboration_count": collab.collaboration_count,
                        "first_collaboration": collab.first_collaboration_date,
                        "last_collaboration": last,
                        "relationship_type": collab.relationship_type,
                        "confidence_score": collab.confidence_score,
                    },
                )
            )
        return out

    def _detect_financial(self, reviewer_id: str, author_ids: list[str]) -> list[ConflictRecord]:
        mine = self.evidence.financial_interests(reviewer_id)
        if not mine:
            return []
        out: list[ConflictRecord] = []
        for author_id in author_ids:
            if author_id == reviewer_id:
                continue
            for theirs in self.evidence.financial_interests(author_id):
                for interest in mine:
                    if _norm(interest.entity) != _norm(theirs.entity):
                        continue
                    competing = "competing" in {interest.relation, theirs.relation}
                    if competing:
                        ctype = ConflictType.FINANCIAL_COMPETING
                        severity = ConflictSeverity(self.config.financial_competing_severity)
                    else:
                        ctype = ConflictType.FINANCIAL_COLLABORATION
                        severity = ConflictSeverity(self.config.financial_collaboration_severity)
                    out.append(
                        ConflictRecord(
                            reviewer_id=reviewer_id,
                            author_id=author_id,
                            conflict_type=ctype,
                            severity=severity,
                            description=f"Shared financial tie with {interest.entity}",
                            evidence={
                                "entity": interest.entity,
                                "reviewer_relation": interest.relation,
                                "author_relation": theirs.relation,
                            },
                        )
                    )
        return out

    def _detect_declared(self, reviewer_id: str, author_ids: list[str]) -> list[ConflictRecord]:
        now = self.clock.now()
        out: list[ConflictRecord] = []
        for declared in self.evidence.declared_conflicts(reviewer_id):
            if declared.conflicted_with_id not in author_ids:
                continue
            if declared.valid_until is not None and parse_datetime(declared.valid_until) <= now:
                continue
            out.append(
                ConflictRecord(
                    reviewer_id=reviewer_id,
                    author_id=declared.conflicted_with_id,
                    conflict_type=ConflictType.OTHER,
                    severity=declared.severity,
                    description=declared.description or "Declared conflict of interest",
                    evidence={"rule": "declared", "reported_by": declared.reported_by},
                )
            )
        return out

    # === Override ===

    def get_override(self, manuscript_id: str, reviewer_id: str) -> Optional[EligibilityOverride]:
        row = self.store.first("coi_overrides", manuscript_id=manuscript_id, reviewer_id=reviewer_id)
        return EligibilityOverride.model_validate(row) if row else None

    def create_override(
        self,
        manuscript_id: str,
        reviewer_id: str,
        *,
        reason: str,
        actor_id: str,
    ) -> EligibilityOverride:
        if self.roles.role_of(str(actor_id)) != Role.ADMIN:
            raise Unauthorized("Only admins can override a conflict of interest", actor_id=actor_id)
        reason_clean = (reason or "").strip()
        if not reason_clean:
            raise PreconditionNotMet("Override justification is required")

        manuscript = Manuscript.from_row(self.store.require("manuscripts", manuscript_id))
        blocking = [c for c in self.detect_conflicts(manuscript, reviewer_id) if c.is_blocking]
        if not blocking:
            raise PreconditionNotMet(
                "Reviewer has no blocking conflict to override",
                manuscript_id=manuscript_id,
                reviewer_id=reviewer_id,
            )

        override = EligibilityOverride(
            manuscript_id=manuscript_id,
            reviewer_id=reviewer_id,
            reason=reason_clean,
            overridden_by=str(actor_id),
            covered_conflicts=sorted({c.fingerprint for c in blocking}),
            timestamp=self.clock.now(),
        )
        try:
            row = self.store.create("coi_overrides", override.model_dump(mode="json", exclude={"id"}))
        except DuplicateEntity as e:
            raise PreconditionNotMet(
                "An override already exists for this reviewer and manuscript",
                manuscript_id=manuscript_id,
                reviewer_id=reviewer_id,
            ) from e
        logger.info(
            "COI override recorded: manuscript=%s reviewer=%s by=%s covers=%s",
            manuscript_id,
            reviewer_id,
            actor_id,
            override.covered_conflicts,
        )
        return EligibilityOverride.model_validate(row)

    # === 事实录入 ===

    def declare_conflict(
        self,
        reviewer_id: str,
        conflicted_with_id: str,
        severity: ConflictSeverity | str,
        *,
        description: str = "",
        reported_by: Optional[str] = None,
        valid_until: Optional[datetime] = None,
    ) -> dict[str, Any]:
        return self.store.create(
            "declared_conflicts",
            {
                "reviewer_id": str(reviewer_id),
                "conflicted_with_id": str(conflicted_with_id),
                "severity": ConflictSeverity(severity).value,
                "description": description,
                "status": "active",
                "reported_by": reported_by,
                "valid_until": valid_until.isoformat() if valid_until else None,
                "created_at": self.clock.now().isoformat(),
            },
        )

    def record_collaboration(
        self,
        person_a_id: str,
        person_b_id: str,
        collaboration_date: date,
        *,
        relationship_type: str = "coauthor",
    ) -> dict[str, Any]:
        """
        记录一次合作（collaboration_networks 以 person_a_id < person_b_id 存一行）。
        """
        a, b = sorted([str(person_a_id), str(person_b_id)])
        existing = self.store.first(
            "collaboration_networks",
            person_a_id=a,
            person_b_id=b,
            relationship_type=relationship_type,
        )
        day = collaboration_date.isoformat()
        if existing is None:
            return self.store.create(
                "collaboration_networks",
                {
                    "person_a_id": a,
                    "person_b_id": b,
                    "relationship_type": relationship_type,
                    "collaboration_count": 1,
                    "first_collaboration_date": day,
                    "last_collaboration_date": day,
                    "created_at": self.clock.now().isoformat(),
                },
            )
        last = str(existing.get("last_collaboration_date") or day)
        first = str(existing.get("first_collaboration_date") or day)
        return self.store.update(
            "collaboration_networks",
            existing["id"],
            {
                "collaboration_count": int(existing.get("collaboration_count") or 0) + 1,
                "first_collaboration_date": min(first, day),
                "last_collaboration_date": max(last, day),
            },
            expected_version=int(existing["version"]),
        )

    def statistics(self, manuscript_id: str, reviewer_ids: Iterable[str]) -> ConflictStatistics:
        results = self.evaluate(manuscript_id, reviewer_ids)
        stats = ConflictStatistics(manuscript_id=manuscript_id, reviewers_checked=len(results))
        for result in results:
            for conflict in result.conflicts:
                stats.total_conflicts += 1
                key_t = conflict.conflict_type.value
                key_s = conflict.severity.value
                stats.by_type[key_t] = stats.by_type.get(key_t, 0) + 1
                stats.by_severity[key_s] = stats.by_severity.get(key_s, 0) + 1
            if not result.is_eligible:
                stats.blocked_reviewers += 1
            elif result.override is not None and result.blocking_conflicts:
                stats.overridden_reviewers += 1
        return stats
