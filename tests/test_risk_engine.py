"""
Tests for the risk engine: scoring over every factor combination,
factor evaluation and fraud ledger writes.
"""
import itertools
import uuid
from decimal import Decimal

import pytest

from motor_pagos.domain.schemas import FraudAction
from motor_pagos.infrastructure.database.fraud_ledger import FraudLedger
from motor_pagos.services.risk_engine import (
    DEFAULT_WEIGHTS,
    FACTOR_NAMES,
    RiskConfig,
    RiskEngine,
    RiskSignal,
    UserRiskProfile,
    fraud_action_for,
    score_factors,
)

PROFILE = UserRiskProfile(device_ids=frozenset({"dev-1"}), known_ips=frozenset({"10.0.0.1"}))


def _signal(**overrides) -> RiskSignal:
    values = dict(ip="10.0.0.1", device_id="dev-1", amount=Decimal("50"))
    values.update(overrides)
    return RiskSignal(**values)


class TestScoring:

    @pytest.mark.parametrize("combination", list(itertools.product([False, True], repeat=len(FACTOR_NAMES))))
    def test_score_is_sum_of_active_weights(self, combination) -> None:
        config = RiskConfig()
        factors = dict(zip(FACTOR_NAMES, combination))

        score, flags = score_factors(factors, config)

        assert score == sum(DEFAULT_WEIGHTS[name] for name, active in factors.items() if active)
        assert flags == [name for name in FACTOR_NAMES if factors[name]]

    @pytest.mark.parametrize(
        "unusual_ip,high_amount,new_device,failed,velocity",
        list(itertools.product([False, True], repeat=5)),
    )
    def test_blocked_iff_score_reaches_threshold(
        self, unusual_ip, high_amount, new_device, failed, velocity
    ) -> None:
        engine = RiskEngine(RiskConfig())
        assessment = engine.assess(
            PROFILE,
            _signal(
                ip                       = "198.51.100.7" if unusual_ip else "10.0.0.1",
                amount                   = Decimal("501") if high_amount else Decimal("500"),
                device_id                = "dev-new" if new_device else "dev-1",
                failed_attempts          = 3 if failed else 2,
                recent_transaction_count = 5 if velocity else 4,
            ),
        )

        expected = unusual_ip * 1 + new_device * 1 + failed * 2 + velocity * 1
        assert assessment.score == expected
        assert assessment.blocked == (expected >= 2)
        assert ("high_amount" in assessment.flags) == high_amount
        assert "suspicious_pattern" not in assessment.flags

    def test_injected_config_changes_outcome(self) -> None:
        lenient = RiskEngine(RiskConfig(threshold=10))
        assessment = lenient.assess(PROFILE, _signal(device_id="dev-new", recent_transaction_count=9))
        assert assessment.score == 2
        assert not assessment.blocked
        assert assessment.threshold == 10

    def test_custom_weights(self) -> None:
        config = RiskConfig(weights={**DEFAULT_WEIGHTS, "high_amount": 2})
        assessment = RiskEngine(config).assess(PROFILE, _signal(amount=Decimal("900")))
        assert assessment.score == 2
        assert assessment.blocked


class TestProfile:

    def test_no_known_locations_is_never_unusual(self) -> None:
        profile = UserRiskProfile(device_ids=frozenset({"dev-1"}))
        assert not profile.is_unusual_location("198.51.100.7")

    def test_unknown_device_is_new(self) -> None:
        assert UserRiskProfile().is_new_device("anything")
        assert not PROFILE.is_new_device("dev-1")

    def test_factors_are_kept_out_of_repr(self) -> None:
        assessment = RiskEngine(RiskConfig()).assess(PROFILE, _signal())
        assert "factors" not in repr(assessment)


class TestFraudAction:

    @pytest.mark.parametrize(
        "score,threshold,expected",
        [(2, 2, FraudAction.FLAGGED), (3, 2, FraudAction.FLAGGED), (4, 2, FraudAction.BLOCKED), (6, 3, FraudAction.BLOCKED)],
    )
    def test_action_doubles_threshold(self, score, threshold, expected) -> None:
        assert fraud_action_for(score, threshold) == expected

    async def test_log_blocked_writes_snapshot(self, db) -> None:
        engine = RiskEngine(RiskConfig())
        assessment = engine.assess(
            PROFILE, _signal(ip="198.51.100.7", device_id="dev-new", failed_attempts=3)
        )
        user_id = uuid.uuid4()

        record = await engine.log_blocked(
            FraudLedger(db),
            assessment,
            user_id             = user_id,
            device_info         = {"device_id": "dev-new", "ip": "198.51.100.7"},
            transaction_details = {"amount": "50", "masked_card": "**** **** **** 1111"},
        )
        await db.commit()

        assert record.id is not None
        assert record.risk_score == 4
        assert record.action == FraudAction.BLOCKED.value
        assert record.flags == ["unusual_location", "new_device", "multiple_failed_attempts"]
        assert record.threshold == 2
        assert not record.reviewed
