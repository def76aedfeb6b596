from __future__ import annotations

import logging
from typing import Any, Optional

from editorial_engine.core.clock import Clock, SystemClock
from editorial_engine.core.config import DecisionActionConfig
from editorial_engine.core.errors import DuplicateEntity, PreconditionNotMet
from editorial_engine.lib.entity_store import EntityStore
from editorial_engine.models.decision import (
    ActionResult,
    ActionStatus,
    ActionType,
    DecisionOptions,
    DecisionOutcome,
    DecisionValue,
    EditorialDecision,
)
from editorial_engine.services.lifecycle_service import LifecycleStateMachine
from editorial_engine.services.post_decision_service import PostDecisionActionOrchestrator

logger = logging.getLogger("editorial_engine.decisions")


class DecisionService:
    """
    编辑决策：状态流转 -> 决策记录 -> 决策后动作流水线。

    中文注释:
    - 每个审稿轮次只有一条决策记录（editorial_decisions 唯一键 manuscript_id + review_round）。
    - 同一轮次重复提交相同决策返回已有记录，不会重复执行已成功的动作。
    - 动作列表来自 DecisionActionConfig，不在这里硬编码。
    """

    def __init__(
        self,
        store: EntityStore,
        lifecycle: LifecycleStateMachine,
        actions: PostDecisionActionOrchestrator,
        *,
        clock: Clock | None = None,
        config: DecisionActionConfig | None = None,
    ) -> None:
        self.store = store
        self.lifecycle = lifecycle
        self.actions = actions
        self.clock = clock or SystemClock()
        self.config = config or DecisionActionConfig()

    def get_decision(self, decision_id: str) -> EditorialDecision:
        return EditorialDecision.model_validate(self.store.require("editorial_decisions", decision_id))

    def decisions_for(self, manuscript_id: str) -> list[EditorialDecision]:
        rows = self.store.list("editorial_decisions", manuscript_id=manuscript_id)
        return sorted(
            (EditorialDecision.model_validate(r) for r in rows),
            key=lambda d: d.review_round,
        )

    def record_decision(
        self,
        manuscript_id: str,
        decision: DecisionValue | str,
        letter: str,
        editor_id: str,
        options: Optional[DecisionOptions] = None,
    ) -> DecisionOutcome:
        try:
            value = DecisionValue(decision)
        except ValueError as e:
            raise PreconditionNotMet(f"Unknown decision: {decision}", manuscript_id=manuscript_id) from e
        options = options or DecisionOptions()

        manuscript = self.lifecycle.get(manuscript_id)
        existing = self.store.first(
            "editorial_decisions",
            manuscript_id=manuscript_id,
            review_round=manuscript.review_round,
        )
        if existing is not None:
            return self._existing_outcome(existing, value, manuscript.status.value)

        result = self.lifecycle.transition(
            manuscript_id,
            value.value,
            editor_id,
            comment=f"decision: {value.value}",
        )

        now = self.clock.now().isoformat()
        try:
            row = self.store.create(
                "editorial_decisions",
                {
                    "manuscript_id": manuscript_id,
                    "decision": value.value,
                    "decision_letter": letter or "",
                    "editor_id": str(editor_id),
                    "review_round": manuscript.review_round,
                    "created_at": now,
                    "sent_at": None,
                    "options": options.model_dump(mode="json", exclude={"actions"}),
                },
            )
        except DuplicateEntity:
            # 并发提交同一轮决策：以先落库的为准
            existing = self.store.first(
                "editorial_decisions",
                manuscript_id=manuscript_id,
                review_round=manuscript.review_round,
            )
            if existing is None:
                raise
            return self._existing_outcome(existing, value, result.manuscript.status.value)

        record = EditorialDecision.model_validate(row)
        logger.info("decision %s recorded for manuscript %s (round %s)", value.value, manuscript_id, record.review_round)

        pipeline = options.actions if options.actions is not None else self.config.actions_for(value.value)
        action_results = self._run_pipeline(record, pipeline, options)
        status = self.lifecycle.get(manuscript_id).status.value
        return DecisionOutcome(
            decision=self.get_decision(record.id),
            manuscript_status=status,
            created=True,
            actions=action_results,
        )

    def _existing_outcome(self, row: dict[str, Any], value: DecisionValue, status: str) -> DecisionOutcome:
        record = EditorialDecision.model_validate(row)
        if record.decision != value:
            raise PreconditionNotMet(
                f"A {record.decision.value} decision was already recorded for this review round",
                manuscript_id=record.manuscript_id,
                decision_id=record.id,
            )
        logger.info("decision replay for manuscript %s returns existing %s", record.manuscript_id, record.id)
        return DecisionOutcome(
            decision=record,
            manuscript_status=status,
            created=False,
            actions=self._recorded_results(record.id),
        )

    def _action_data(self, record: EditorialDecision, options: DecisionOptions) -> dict[str, Any]:
        return {
            "decision_id": record.id,
            "manuscript_id": record.manuscript_id,
            "decision": record.decision.value,
            "editor_id": record.editor_id,
            "production_editor_id": options.production_editor_id,
            "publication_date": options.publication_date.isoformat() if options.publication_date else None,
            "follow_up_days": options.follow_up_days,
        }

    def _run_pipeline(
        self,
        record: EditorialDecision,
        pipeline: Any,
        options: DecisionOptions,
    ) -> list[ActionResult]:
        data = self._action_data(record, options)
        results: list[ActionResult] = []
        for raw in pipeline:
            try:
                action = ActionType(raw)
            except ValueError:
                logger.warning("skipping unknown action %s in %s pipeline", raw, record.decision.value)
                continue
            # 各动作相互独立：前一个失败不影响后续
            success = self.actions.execute_action(action, data)
            error = None if success else self._last_error(record.id, action)
            results.append(ActionResult(action_type=action, success=success, error=error))
        return results

    def _last_error(self, decision_id: str, action: ActionType) -> Optional[str]:
        row = self.store.first("decision_actions", decision_id=decision_id, action_type=action.value)
        if row is None:
            return None
        return row.get("last_error") or (None if row.get("status") != ActionStatus.RUNNING.value else "already running")

    def _recorded_results(self, decision_id: str) -> list[ActionResult]:
        return [
            ActionResult(
                action_type=ActionType(row["action_type"]),
                success=row.get("status") == ActionStatus.SUCCEEDED.value,
                error=row.get("last_error"),
            )
            for row in self.store.list("decision_actions", decision_id=decision_id)
        ]

    def retry_failed_actions(self, decision_id: str, options: Optional[DecisionOptions] = None) -> list[ActionResult]:
        """
        重新执行某个决策下失败的动作（成功的动作不会重跑）。
        卡在 running 且已超时的动作（执行进程崩溃）同样重跑。
        """
        record = self.get_decision(decision_id)
        failed = [
            row["action_type"]
            for row in self.store.list("decision_actions", decision_id=decision_id)
            if row.get("status") == ActionStatus.FAILED.value or self.actions.is_stale_claim(row)
        ]
        if not failed:
            return []
        logger.info("retrying %s failed action(s) for decision %s", len(failed), decision_id)
        if options is None:
            row = self.store.require("editorial_decisions", decision_id)
            options = DecisionOptions.model_validate(row.get("options") or {})
        return self._run_pipeline(record, failed, options)
