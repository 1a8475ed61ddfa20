"""
Contribution value rules: amount normalization, the approval state
machine and revision text helpers.
"""

from decimal import Decimal
from uuid import uuid4

import pytest
from hypothesis import given, strategies as st

from funding_kernel.db.types import MAX_MONEY
from funding_kernel.domain.contribution import (
    ApprovalStatus,
    ContributionStatus,
    can_transition,
    contribution_status_for,
    normalize_amount,
    require_text,
    revision_admin_comment,
    revision_notes,
)
from funding_kernel.exceptions import InvalidAmountError, MissingFieldError


class TestNormalizeAmount:

    @pytest.mark.parametrize("raw,expected", [
        ("600", Decimal("600.00")),
        ("600.5", Decimal("600.50")),
        (Decimal("250.00"), Decimal("250.00")),
        (15, Decimal("15.00")),
    ])
    def test_valid(self, raw, expected):
        assert normalize_amount(raw) == expected

    @pytest.mark.parametrize("raw", ["0", "-5", "0.00", "12.345", "abc"])
    def test_invalid(self, raw):
        with pytest.raises(InvalidAmountError):
            normalize_amount(raw)

    def test_largest_storable_amount(self):
        assert normalize_amount("999999999999.99") == MAX_MONEY

    @pytest.mark.parametrize("raw", ["1000000000000", "12345678901234567.89"])
    def test_amount_above_column_capacity(self, raw):
        with pytest.raises(InvalidAmountError) as exc_info:
            normalize_amount(raw)
        assert "exceed" in exc_info.value.reason

    def test_float_rejected(self):
        with pytest.raises(InvalidAmountError):
            normalize_amount(10.5)

    @given(cents=st.integers(min_value=1, max_value=10**12 - 1))
    def test_two_place_amounts_round_trip(self, cents):
        value = Decimal(cents).scaleb(-2)
        assert normalize_amount(value) == value


class TestApprovalStateMachine:

    @pytest.mark.parametrize("from_status,to_status", [
        (ApprovalStatus.PENDING, ApprovalStatus.APPROVED),
        (ApprovalStatus.PENDING, ApprovalStatus.REJECTED),
        (ApprovalStatus.REJECTED, ApprovalStatus.PENDING),
        (ApprovalStatus.REJECTED, ApprovalStatus.REVISED),
    ])
    def test_allowed(self, from_status, to_status):
        assert can_transition(from_status, to_status)

    @pytest.mark.parametrize("terminal", [ApprovalStatus.APPROVED, ApprovalStatus.REVISED])
    def test_terminal_has_no_exit(self, terminal):
        assert not any(can_transition(terminal, target) for target in ApprovalStatus)

    def test_pending_cannot_be_revised_directly(self):
        assert not can_transition(ApprovalStatus.PENDING, ApprovalStatus.REVISED)

    def test_revised_mirrors_as_rejected(self):
        assert contribution_status_for(ApprovalStatus.REVISED) == ContributionStatus.REJECTED
        assert contribution_status_for(ApprovalStatus.APPROVED) == ContributionStatus.APPROVED


class TestTextHelpers:

    def test_require_text_strips(self):
        assert require_text("  hello ", "reply") == "hello"

    @pytest.mark.parametrize("value", [None, "", "   "])
    def test_require_text_rejects_blank(self, value):
        with pytest.raises(MissingFieldError) as exc_info:
            require_text(value, "reply")
        assert exc_info.value.field_name == "reply"

    def test_revision_text(self):
        original = uuid4()
        assert revision_notes("wrong amount") == "REVISION: wrong amount"
        comment = revision_admin_comment(original, "invalid proof")
        assert str(original) in comment
        assert "invalid proof" in comment
        assert "not recorded" in revision_admin_comment(original, None)
