from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from editorial_engine.core.clock import Clock, SystemClock
from editorial_engine.core.config import (
    AppConfig,
    ConflictConfig,
    DecisionActionConfig,
    QualityConfig,
    WorkflowConfig,
)
from editorial_engine.core.quality_worker import QualityWorker
from editorial_engine.core.roles import RoleProvider, StoreRoleProvider
from editorial_engine.core.scheduler import WorkflowScheduler
from editorial_engine.core.tokens import InvitationTokenSigner
from editorial_engine.lib.entity_store import EntityStore, InMemoryEntityStore
from editorial_engine.services.assignment_service import AssignmentService
from editorial_engine.services.conflict_service import ConflictOfInterestEngine
from editorial_engine.services.decision_service import DecisionService
from editorial_engine.services.evidence_source import ConflictEvidenceSource, StoreEvidenceSource
from editorial_engine.services.invitation_service import InvitationOrchestrator
from editorial_engine.services.lifecycle_service import LifecycleStateMachine
from editorial_engine.services.notification_service import (
    CompositeNotificationSender,
    EmailNotificationSender,
    InAppNotificationSender,
    NotificationSender,
)
from editorial_engine.services.post_decision_service import PostDecisionActionOrchestrator
from editorial_engine.services.quality_queue import InMemoryJobQueue, JobQueue, StoreJobQueue
from editorial_engine.services.quality_service import QualityService


@dataclass
class EditorialEngine:
    """
    组件装配（进程内 composition root）。

    中文注释: 所有组件共享同一个 store / clock / role provider；外部协作者都可以替换。
    """

    store: EntityStore
    clock: Clock
    roles: RoleProvider
    sender: NotificationSender
    lifecycle: LifecycleStateMachine
    conflicts: ConflictOfInterestEngine
    invitations: InvitationOrchestrator
    queue: JobQueue
    quality: QualityService
    assignments: AssignmentService
    post_decision: PostDecisionActionOrchestrator
    decisions: DecisionService

    @classmethod
    def build(
        cls,
        store: EntityStore,
        *,
        roles: Optional[RoleProvider] = None,
        sender: Optional[NotificationSender] = None,
        evidence: Optional[ConflictEvidenceSource] = None,
        queue: Optional[JobQueue] = None,
        clock: Optional[Clock] = None,
        workflow_config: Optional[WorkflowConfig] = None,
        conflict_config: Optional[ConflictConfig] = None,
        quality_config: Optional[QualityConfig] = None,
        decision_config: Optional[DecisionActionConfig] = None,
        token_secret: Optional[str] = None,
    ) -> "EditorialEngine":
        clock = clock or SystemClock()
        roles = roles or StoreRoleProvider(store)
        sender = sender or InAppNotificationSender(store)
        evidence = evidence or StoreEvidenceSource(store)
        queue = queue or StoreJobQueue(store, clock=clock)
        workflow_config = workflow_config or WorkflowConfig()

        lifecycle = LifecycleStateMachine(store, roles, clock=clock, config=workflow_config)
        conflicts = ConflictOfInterestEngine(store, evidence, roles, clock=clock, config=conflict_config)
        signer = InvitationTokenSigner(token_secret, max_age_seconds=workflow_config.response_token_max_age_seconds)
        invitations = InvitationOrchestrator(
            store,
            conflicts,
            lifecycle,
            roles,
            sender,
            clock=clock,
            config=workflow_config,
            signer=signer,
        )
        quality = QualityService(store, queue, roles, sender, clock=clock, config=quality_config)
        assignments = AssignmentService(store, quality, clock=clock)
        post_decision = PostDecisionActionOrchestrator(store, lifecycle, sender, clock=clock, config=decision_config)
        decisions = DecisionService(store, lifecycle, post_decision, clock=clock, config=decision_config)
        return cls(
            store=store,
            clock=clock,
            roles=roles,
            sender=sender,
            lifecycle=lifecycle,
            conflicts=conflicts,
            invitations=invitations,
            queue=queue,
            quality=quality,
            assignments=assignments,
            post_decision=post_decision,
            decisions=decisions,
        )

    @classmethod
    def in_memory(cls, **kwargs) -> "EditorialEngine":
        """单进程/测试用：内存存储 + 内存队列。"""
        store = kwargs.pop("store", None) or InMemoryEntityStore()
        clock = kwargs.pop("clock", None) or SystemClock()
        queue = kwargs.pop("queue", None) or InMemoryJobQueue(clock=clock)
        return cls.build(store, clock=clock, queue=queue, **kwargs)

    @classmethod
    def from_env(cls) -> "EditorialEngine":
        from editorial_engine.lib.supabase_store import SupabaseEntityStore

        store = SupabaseEntityStore()
        sender = CompositeNotificationSender([InAppNotificationSender(store), EmailNotificationSender(store)])
        return cls.build(
            store,
            sender=sender,
            workflow_config=WorkflowConfig.from_env(),
            conflict_config=ConflictConfig.from_env(),
            quality_config=QualityConfig.from_env(),
            decision_config=DecisionActionConfig.from_env(),
            token_secret=AppConfig.from_env().token_secret,
        )

    def quality_worker(self, *, worker_id: Optional[str] = None) -> QualityWorker:
        return QualityWorker(self.queue, self.quality, clock=self.clock, worker_id=worker_id)

    def scheduler(self) -> WorkflowScheduler:
        return WorkflowScheduler(self.invitations, self.post_decision)
