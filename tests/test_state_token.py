"""
Tests for the OAuth state token.
"""

import base64
import json
import uuid
from datetime import timedelta

import pytest

from conftest import NOW
from core.errors import ExpiredAuthorization, InvalidCallback
from core.oauth_manager import create_state, verify_state

SECRET = "state-secret"
USER = str(uuid.uuid4())


class TestStateToken:
    def test_round_trip_returns_user(self):
        state = create_state(USER, NOW, SECRET)
        assert verify_state(state, NOW, SECRET, 300) == USER

    def test_accepted_just_inside_ttl(self):
        state = create_state(USER, NOW, SECRET)
        later = NOW + timedelta(minutes=4, seconds=59)
        assert verify_state(state, later, SECRET, 300) == USER

    def test_expired_just_outside_ttl(self):
        state = create_state(USER, NOW, SECRET)
        later = NOW + timedelta(minutes=5, seconds=1)
        with pytest.raises(ExpiredAuthorization) as exc_info:
            verify_state(state, later, SECRET, 300)
        assert exc_info.value.message == "Authorization expired"

    @pytest.mark.parametrize("state", ["", "not-a-token", "!!!.abc", "e30.deadbeef"])
    def test_malformed_state_is_invalid_callback(self, state):
        with pytest.raises(InvalidCallback):
            verify_state(state, NOW, SECRET, 300)

    def test_wrong_secret_is_rejected(self):
        state = create_state(USER, NOW, SECRET)
        with pytest.raises(InvalidCallback):
            verify_state(state, NOW, "other-secret", 300)

    def test_tampered_payload_is_rejected(self):
        state = create_state(USER, NOW, SECRET)
        _, signature = state.split(".", 1)
        forged = json.dumps({"user_id": str(uuid.uuid4()), "issued_at": 0}).encode()
        tampered = base64.urlsafe_b64encode(forged).decode() + "." + signature
        with pytest.raises(InvalidCallback):
            verify_state(tampered, NOW, SECRET, 300)
