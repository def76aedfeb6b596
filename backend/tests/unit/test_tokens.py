import pytest
from itsdangerous import URLSafeTimedSerializer

from editorial_engine.core.errors import InvalidToken
from editorial_engine.core.tokens import InvitationTokenSigner


def test_round_trip_carries_invitation_and_reviewer():
    signer = InvitationTokenSigner("secret")
    payload = signer.loads(signer.dumps("inv-1", "reviewer-1"))
    assert payload == {"invitation_id": "inv-1", "reviewer_id": "reviewer-1"}


def test_token_signed_with_other_secret_is_rejected():
    token = InvitationTokenSigner("other").dumps("inv-1", "reviewer-1")
    with pytest.raises(InvalidToken):
        InvitationTokenSigner("secret").loads(token)


def test_expired_token_is_rejected():
    signer = InvitationTokenSigner("secret", max_age_seconds=-1)
    with pytest.raises(InvalidToken, match="expired"):
        signer.loads(signer.dumps("inv-1", "reviewer-1"))


def test_payload_without_ids_is_rejected():
    raw = URLSafeTimedSerializer("secret").dumps({"invitation_id": "inv-1"}, salt="reviewer-invitation-response")
    with pytest.raises(InvalidToken):
        InvitationTokenSigner("secret").loads(raw)
