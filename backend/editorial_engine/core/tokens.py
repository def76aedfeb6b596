from __future__ import annotations

from typing import Any

from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from editorial_engine.core.config import app_config
from editorial_engine.core.errors import InvalidToken

_INVITATION_SALT = "reviewer-invitation-response"


class InvitationTokenSigner:
    """
    审稿邀请回复链接 token（邮件里的 accept/decline 链接）。

    中文注释: token 只携带 invitation_id + reviewer_id，真正的状态校验仍在 InvitationOrchestrator.respond。
    """

    def __init__(self, secret: str | None = None, *, max_age_seconds: int = 60 * 60 * 24 * 30) -> None:
        self._serializer = URLSafeTimedSerializer(secret or app_config.token_secret or "dev-secret")
        self.max_age_seconds = max_age_seconds

    def dumps(self, invitation_id: str, reviewer_id: str) -> str:
        return self._serializer.dumps(
            {"invitation_id": str(invitation_id), "reviewer_id": str(reviewer_id)},
            salt=_INVITATION_SALT,
        )

    def loads(self, token: str) -> dict[str, Any]:
        try:
            payload = self._serializer.loads(token, salt=_INVITATION_SALT, max_age=self.max_age_seconds)
        except SignatureExpired as e:
            raise InvalidToken("Invitation link has expired") from e
        except BadSignature as e:
            raise InvalidToken("Invalid invitation link") from e
        if not isinstance(payload, dict) or not payload.get("invitation_id") or not payload.get("reviewer_id"):
            raise InvalidToken("Invalid invitation link")
        return payload
