"""Priority classification and wait estimation."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from queue_engine.domain import PriorityRequest, PriorityTier, Service
from queue_engine.errors import ErrorCode, ValidationError
from queue_engine.routing.estimator import WaitEstimator
from queue_engine.routing.priority import classify, normalise_label, resolve_request

WHEN = datetime(2026, 3, 2, 14, 0, tzinfo=timezone.utc)


# ── classify ─────────────────────────────────────────────────────────────

@pytest.mark.parametrize("label,tier", [
    ("normal", PriorityTier.NORMAL),
    ("URGENT", PriorityTier.URGENT),
    ("vip", PriorityTier.VIP),
    ("elderly", PriorityTier.SPECIAL),
    ("disabled", PriorityTier.SPECIAL),
    (" pregnant ", PriorityTier.SPECIAL),
])
def test_classify_labels(label, tier):
    assert classify(label) is tier


def test_classify_appointment():
    assert classify("appointment", WHEN) is PriorityTier.APPOINTMENT
    assert classify("vip", WHEN) is PriorityTier.APPOINTMENT


def test_appointment_without_time():
    with pytest.raises(ValidationError) as exc:
        classify("appointment")
    assert exc.value.code is ErrorCode.INVALID_PRIORITY


def test_time_on_other_label_rejected():
    with pytest.raises(ValidationError):
        classify("urgent", WHEN)


def test_unknown_label():
    with pytest.raises(ValidationError):
        normalise_label("platinum")
    with pytest.raises(ValidationError):
        normalise_label("")


def test_normalise_tier_enum():
    assert normalise_label(PriorityTier.SPECIAL) == "special"


class TestResolveRequest:

    def test_plain(self):
        assert resolve_request(PriorityRequest()) == (PriorityTier.NORMAL, "normal", None)

    def test_keeps_label(self):
        assert resolve_request(PriorityRequest(label="Elderly")) == (
            PriorityTier.SPECIAL, "elderly", None,
        )

    def test_vip_code(self):
        assert resolve_request(PriorityRequest(vip_code=" vip2024 ")) == (
            PriorityTier.VIP, "vip", "VIP2024",
        )

    def test_vip_code_keeps_higher_label(self):
        tier, label, _ = resolve_request(PriorityRequest(label="urgent", vip_code="VIP001"))
        assert (tier, label) == (PriorityTier.URGENT, "urgent")

    def test_bad_vip_code(self):
        with pytest.raises(ValidationError):
            resolve_request(PriorityRequest(vip_code="VIP999"))


# ── estimator ────────────────────────────────────────────────────────────

WITHDRAWAL = Service(code="W", name="Withdrawal", base_service_minutes=5)
LOAN = Service(code="L", name="Loan", base_service_minutes=45)


@pytest.mark.parametrize("service,tier,waiting,expected", [
    (WITHDRAWAL, PriorityTier.NORMAL, 0, 2),
    (WITHDRAWAL, PriorityTier.NORMAL, 3, 15),
    (WITHDRAWAL, PriorityTier.VIP, 1, 5),
    (WITHDRAWAL, PriorityTier.VIP, 10, 15),
    (WITHDRAWAL, PriorityTier.URGENT, 1, 2),
    (WITHDRAWAL, PriorityTier.SPECIAL, 2, 4),
    (LOAN, PriorityTier.URGENT, 2, 18),
    (LOAN, PriorityTier.APPOINTMENT, 8, 0),
])
def test_estimate(service, tier, waiting, expected):
    assert WaitEstimator().estimate(service, tier, waiting) == expected


def test_estimate_rounds_up():
    # 1 × 45 × 0.3 = 13.5
    assert WaitEstimator().estimate(LOAN, PriorityTier.VIP, 1) == 14


def test_custom_factors():
    est = WaitEstimator(
        factors={"appointment": 0, "vip": 0.5, "urgent": 0.5, "special": 0.5, "normal": 2.0},
        minimums={"appointment": 0, "vip": 0, "urgent": 0, "special": 0, "normal": 0},
    )
    assert est.estimate(WITHDRAWAL, PriorityTier.NORMAL, 2) == 20
    assert est.estimate(WITHDRAWAL, PriorityTier.VIP, 0) == 0
