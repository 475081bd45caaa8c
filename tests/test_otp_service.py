"""
Tests for OTP issuance, validation and the Redis challenge store.
"""
import asyncio
import uuid
from datetime import datetime, timedelta, timezone

import pytest

from motor_pagos.services.otp_service import (
    OTP_EXPIRED,
    OTP_INVALID,
    OtpChallengeStore,
    OtpIssuer,
)


@pytest.fixture
def issuer() -> OtpIssuer:
    return OtpIssuer(expire_minutes=5)


class TestOtpIssuer:

    def test_issue_numeric_code_with_expiry(self, issuer: OtpIssuer) -> None:
        now = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
        issued = issuer.issue(length=6, now=now)
        assert len(issued.code) == 6 and issued.code.isdigit()
        assert issued.expires_at == now + timedelta(minutes=5)

    def test_issued_code_is_hidden_in_repr(self, issuer: OtpIssuer) -> None:
        issued = issuer.issue()
        assert issued.code not in repr(issued)

    def test_correct_code_before_expiry_is_valid(self, issuer: OtpIssuer) -> None:
        issued = issuer.issue()
        result = issuer.validate(issued.code, issuer.digest(issued.code), issued.expires_at)
        assert result.valid
        assert result.reason is None

    def test_wrong_code_before_expiry_is_invalid(self, issuer: OtpIssuer) -> None:
        issued = issuer.issue()
        wrong = "000000" if issued.code != "000000" else "111111"
        result = issuer.validate(wrong, issuer.digest(issued.code), issued.expires_at)
        assert not result.valid
        assert result.reason == OTP_INVALID

    @pytest.mark.parametrize("correct", [True, False])
    def test_after_expiry_always_expired(self, issuer: OtpIssuer, correct: bool) -> None:
        issued = issuer.issue()
        attempt = issued.code if correct else "999999x"
        later = issued.expires_at + timedelta(seconds=1)
        result = issuer.validate(attempt, issuer.digest(issued.code), issued.expires_at, now=later)
        assert not result.valid
        assert result.reason == OTP_EXPIRED


class TestOtpChallengeStore:

    async def test_save_and_get(self, fake_redis, issuer: OtpIssuer) -> None:
        store = OtpChallengeStore()
        user_id, tx_id = uuid.uuid4(), uuid.uuid4()
        issued = issuer.issue()

        await store.save(user_id, tx_id, issuer.digest(issued.code), issued.expires_at)
        challenge = await store.get(user_id)

        assert challenge is not None
        assert challenge.transaction_id == tx_id
        assert challenge.code_hash == issuer.digest(issued.code)
        assert challenge.expires_at == issued.expires_at
        assert challenge.attempts == 0

    async def test_code_is_never_stored_in_clear(self, fake_redis, issuer: OtpIssuer) -> None:
        store = OtpChallengeStore()
        user_id = uuid.uuid4()
        expires_at = datetime(2030, 1, 1, tzinfo=timezone.utc)
        await store.save(user_id, uuid.UUID(int=1), issuer.digest("987654"), expires_at)

        raw = await fake_redis.get(f"otp:{user_id}:code")
        assert b"987654" not in raw
        assert issuer.digest("987654").encode() in raw

    async def test_register_failure_counts_attempts(self, fake_redis, issuer: OtpIssuer) -> None:
        store = OtpChallengeStore()
        user_id = uuid.uuid4()
        issued = issuer.issue()
        await store.save(user_id, uuid.uuid4(), issuer.digest(issued.code), issued.expires_at)

        assert await store.register_failure(user_id) == 1
        assert await store.register_failure(user_id) == 2
        assert (await store.get(user_id)).attempts == 2

    async def test_new_challenge_replaces_previous_and_resets_attempts(
        self, fake_redis, issuer: OtpIssuer
    ) -> None:
        store = OtpChallengeStore()
        user_id, first_tx, second_tx = uuid.uuid4(), uuid.uuid4(), uuid.uuid4()
        issued = issuer.issue()
        await store.save(user_id, first_tx, issuer.digest(issued.code), issued.expires_at)
        await store.register_failure(user_id)

        await store.save(user_id, second_tx, issuer.digest(issued.code), issued.expires_at)
        challenge = await store.get(user_id)
        assert challenge.transaction_id == second_tx
        assert challenge.attempts == 0

    @pytest.mark.race
    async def test_consume_has_single_winner(self, fake_redis, issuer: OtpIssuer) -> None:
        store = OtpChallengeStore()
        user_id = uuid.uuid4()
        issued = issuer.issue()
        await store.save(user_id, uuid.uuid4(), issuer.digest(issued.code), issued.expires_at)

        results = await asyncio.gather(*(store.consume(user_id) for _ in range(5)))

        assert results.count(True) == 1
        assert await store.get(user_id) is None

    async def test_expired_challenge_is_still_readable(self, fake_redis, issuer: OtpIssuer) -> None:
        store = OtpChallengeStore()
        user_id = uuid.uuid4()
        past = datetime.now(timezone.utc) - timedelta(minutes=1)
        await store.save(user_id, uuid.uuid4(), issuer.digest("123456"), past)

        challenge = await store.get(user_id)
        assert challenge is not None
        assert issuer.validate("123456", challenge.code_hash, challenge.expires_at).reason == OTP_EXPIRED

    async def test_clear_removes_challenge(self, fake_redis, issuer: OtpIssuer) -> None:
        store = OtpChallengeStore()
        user_id = uuid.uuid4()
        await store.save(user_id, uuid.uuid4(), issuer.digest("123456"), issuer.issue().expires_at)
        await store.clear(user_id)
        assert await store.get(user_id) is None
