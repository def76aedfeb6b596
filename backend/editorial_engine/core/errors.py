from __future__ import annotations

from typing import Any, Iterable


class EditorialError(Exception):
    """
    编辑流程引擎统一异常基类。

    中文注释:
    - status_code 仅作为“建议的 HTTP 映射”，由外层 API 决定是否采用。
    - detail 保持英文短句，便于前端直接展示/日志检索。
    """

    status_code = 400

    def __init__(self, detail: str = "", **context: Any) -> None:
        super().__init__(detail or self.__class__.__name__)
        self.detail = detail or self.__class__.__name__
        self.context = context


class InvalidTransition(EditorialError):
    status_code = 409

    def __init__(self, from_status: str, to_status: str, allowed: Iterable[str] = ()) -> None:
        allowed_sorted = sorted(allowed)
        super().__init__(
            f"Invalid transition: {from_status} -> {to_status}. Allowed: {allowed_sorted}",
            from_status=from_status,
            to_status=to_status,
            allowed=allowed_sorted,
        )
        self.from_status = from_status
        self.to_status = to_status


class PreconditionNotMet(EditorialError):
    status_code = 422


class InvitationExpired(PreconditionNotMet):
    status_code = 410


class Unauthorized(EditorialError):
    status_code = 403


class AlreadyResponded(EditorialError):
    status_code = 409

    def __init__(self, invitation_id: str, status: str) -> None:
        super().__init__(f"Invitation already {status}", invitation_id=invitation_id, status=status)
        self.invitation_id = invitation_id
        self.status = status


class IneligibleReviewer(EditorialError):
    status_code = 409

    def __init__(self, reviewer_id: str, conflicts: list[Any]) -> None:
        types = (getattr(c, "conflict_type", c) for c in conflicts)
        kinds = ", ".join(sorted({str(getattr(t, "value", t)) for t in types}))
        super().__init__(f"Conflict of interest: {kinds}", reviewer_id=reviewer_id)
        self.reviewer_id = reviewer_id
        self.conflicts = conflicts


class JobFailedPermanently(EditorialError):
    status_code = 500

    def __init__(self, job_id: str, attempts: int, last_error: str | None) -> None:
        super().__init__(
            f"Job {job_id} failed after {attempts} attempts: {last_error}",
            job_id=job_id,
            attempts=attempts,
        )
        self.job_id = job_id
        self.attempts = attempts
        self.last_error = last_error


class NotificationDeliveryFailed(EditorialError):
    """非致命：记录日志后继续主流程。"""

    status_code = 502

    def __init__(self, recipient_id: str, template: str) -> None:
        super().__init__(
            f"Notification {template} to {recipient_id} failed",
            recipient_id=recipient_id,
            template=template,
        )
        self.recipient_id = recipient_id
        self.template = template


class ConcurrentModification(EditorialError):
    status_code = 409

    def __init__(self, table: str, row_id: str, expected_version: int | None = None) -> None:
        super().__init__(
            f"{table}/{row_id} was modified concurrently (expected version {expected_version})",
            table=table,
            row_id=row_id,
        )
        self.table = table
        self.row_id = row_id
        self.expected_version = expected_version


class EntityNotFound(EditorialError):
    status_code = 404

    def __init__(self, table: str, row_id: str) -> None:
        super().__init__(f"{table}/{row_id} not found", table=table, row_id=row_id)
        self.table = table
        self.row_id = row_id


class DuplicateEntity(EditorialError):
    status_code = 409

    def __init__(self, table: str, key: dict[str, Any] | None = None) -> None:
        super().__init__(f"Duplicate {table} row for {key or {}}", table=table)
        self.table = table
        self.key = key or {}


class EntityStoreError(EditorialError):
    status_code = 500


class InvalidToken(EditorialError):
    status_code = 400
