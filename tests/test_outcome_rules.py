import pytest

from app.domain.outcomes.rules import backfill_cancelled_outcome, resolve_financial_outcome

INTENT_STATUSES = [
    None,
    "requires_payment_method",
    "requires_action",
    "processing",
    "succeeded",
    "canceled",
    "failed",
]


@pytest.mark.parametrize("payment_status", INTENT_STATUSES)
def test_no_payment_required_is_always_voided(payment_status):
    result = resolve_financial_outcome(False, payment_status)
    assert result.financial_outcome == "voided"
    assert result.resolution_reason == "no_payment_required"


@pytest.mark.parametrize("payment_status", INTENT_STATUSES)
def test_required_payment_settles_only_when_captured(payment_status):
    result = resolve_financial_outcome(True, payment_status)
    if payment_status == "succeeded":
        assert result == ("settled", "payment_captured")
    else:
        assert result == ("voided", "payment_not_captured")


def test_backfill_refund_amount_wins():
    assert backfill_cancelled_outcome(2000, None, "succeeded") == (
        "refunded",
        "cancelled_refunded_before_cutoff",
    )


def test_backfill_refund_id_alone_counts_as_refunded():
    assert backfill_cancelled_outcome(0, "re_123", "succeeded").financial_outcome == "refunded"


def test_backfill_captured_without_refund_is_settled():
    assert backfill_cancelled_outcome(0, None, "succeeded") == (
        "settled",
        "cancelled_no_refund_after_cutoff",
    )


@pytest.mark.parametrize("payment_status", [None, "processing", "failed", "canceled"])
def test_backfill_without_capture_is_voided(payment_status):
    assert backfill_cancelled_outcome(None, None, payment_status) == (
        "voided",
        "cancelled_no_payment_captured",
    )
