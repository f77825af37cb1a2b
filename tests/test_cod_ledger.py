# =============================================================================
# Tests for CODLedger
# =============================================================================
# awaiting -> collected | failed ; collected | failed -> returned.
# Anything else is invalid_state and leaves the row untouched.
# =============================================================================

from decimal import Decimal
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from models.cod_tracking import CODState, CODFailureReason
from services.cod_ledger import CODLedger
from services.errors import CODError, CODErrorKind


@pytest.fixture
def ledger(db):
    return CODLedger(db)


@pytest.fixture
def cod_order(make_order, ledger):
    make_order("O2")
    ledger.init_tracking("O2")
    return "O2"


def _move_to(ledger, order_id, state):
    if state == CODState.COLLECTED:
        ledger.record_collection(order_id, "agent_7", 1500)
    elif state == CODState.FAILED:
        ledger.record_failure(order_id, CODFailureReason.NOT_HOME)
    elif state == CODState.RETURNED:
        ledger.record_failure(order_id, CODFailureReason.REFUSED)
        ledger.mark_returned(order_id)


class TestInitTracking:

    def test_creates_awaiting_row(self, make_order, ledger):
        make_order("O2")

        tracking = ledger.init_tracking("O2")

        assert tracking.state == CODState.AWAITING
        assert tracking.delivery_attempts == 0

    def test_is_idempotent(self, db, cod_order, ledger):
        ledger.record_failure(cod_order, CODFailureReason.NO_CASH)

        tracking = ledger.init_tracking(cod_order)

        assert tracking.state == CODState.FAILED

    def test_unknown_order(self, ledger):
        with pytest.raises(CODError) as exc_info:
            ledger.init_tracking("missing")

        assert exc_info.value.kind == CODErrorKind.ORDER_NOT_FOUND


class TestCollection:

    def test_collection_from_awaiting(self, cod_order, ledger):
        tracking = ledger.record_collection(cod_order, "agent_7", 1500, "r123")

        assert tracking.state == CODState.COLLECTED
        assert tracking.collected_by == "agent_7"
        assert Decimal(tracking.collected_amount) == Decimal("1500")
        assert tracking.receipt_ref == "r123"
        assert tracking.collected_at is not None
        assert tracking.delivery_attempts == 1
        assert tracking.last_attempt_at is not None

    def test_second_collection_fails_and_keeps_first(self, cod_order, ledger):
        ledger.record_collection(cod_order, "agent_7", 1500, "r123")

        with pytest.raises(CODError) as exc_info:
            ledger.record_collection(cod_order, "agent_7", 1500, "r123")

        assert exc_info.value.kind == CODErrorKind.INVALID_STATE
        assert exc_info.value.current_state == CODState.COLLECTED
        tracking = ledger.get_tracking(cod_order)
        assert tracking.receipt_ref == "r123"
        assert tracking.delivery_attempts == 1

    def test_collection_without_collector(self, cod_order, ledger):
        with pytest.raises(ValueError):
            ledger.record_collection(cod_order, "", 1500)

    @pytest.mark.parametrize("amount", ["lots", -1])
    def test_collection_with_bad_amount(self, cod_order, ledger, amount):
        with pytest.raises(ValueError):
            ledger.record_collection(cod_order, "agent_7", amount)

        assert ledger.get_tracking(cod_order).state == CODState.AWAITING

    def test_collection_without_tracking_row(self, make_order, ledger):
        make_order("O3")

        with pytest.raises(CODError) as exc_info:
            ledger.record_collection("O3", "agent_7", 1500)

        assert exc_info.value.kind == CODErrorKind.ORDER_NOT_FOUND


class TestFailureAndReturn:

    def test_failure_from_awaiting(self, cod_order, ledger):
        tracking = ledger.record_failure(cod_order, CODFailureReason.NOT_HOME, "Gate locked")

        assert tracking.state == CODState.FAILED
        assert tracking.failure_reason == "not_home"
        assert tracking.notes == "Gate locked"
        assert tracking.delivery_attempts == 1

    def test_invalid_reason(self, cod_order, ledger):
        with pytest.raises(ValueError):
            ledger.record_failure(cod_order, "dog_ate_parcel")

    def test_failed_then_returned_then_collection_rejected(self, cod_order, ledger):
        ledger.record_failure(cod_order, CODFailureReason.REFUSED)

        tracking = ledger.mark_returned(cod_order)
        assert tracking.state == CODState.RETURNED

        with pytest.raises(CODError) as exc_info:
            ledger.record_collection(cod_order, "agent_7", 1500, "r123")
        assert exc_info.value.kind == CODErrorKind.INVALID_STATE

    def test_collected_then_returned(self, cod_order, ledger):
        ledger.record_collection(cod_order, "agent_7", 1500)

        assert ledger.mark_returned(cod_order).state == CODState.RETURNED


@pytest.mark.parametrize("state, action", [
    (CODState.AWAITING, "returned"),
    (CODState.COLLECTED, "failed"),
    (CODState.FAILED, "collected"),
    (CODState.FAILED, "failed"),
    (CODState.RETURNED, "returned"),
    (CODState.RETURNED, "failed"),
])
def test_illegal_transitions_leave_row_unchanged(cod_order, ledger, state, action):
    _move_to(ledger, cod_order, state)
    before = ledger.get_tracking(cod_order).to_dict()

    with pytest.raises(CODError) as exc_info:
        if action == "collected":
            ledger.record_collection(cod_order, "agent_9", 999)
        elif action == "failed":
            ledger.record_failure(cod_order, CODFailureReason.OTHER)
        else:
            ledger.mark_returned(cod_order)

    assert exc_info.value.kind == CODErrorKind.INVALID_STATE
    assert ledger.get_tracking(cod_order).to_dict() == before


def test_storage_failure_is_persistence_failure(db, cod_order, ledger):
    error = OperationalError("COMMIT", {}, Exception("disk I/O error"))

    with patch.object(db, "commit", side_effect=error):
        with pytest.raises(CODError) as exc_info:
            ledger.record_collection(cod_order, "agent_7", 1500)

    assert exc_info.value.kind == CODErrorKind.PERSISTENCE_FAILURE
    assert ledger.get_tracking(cod_order).state == CODState.AWAITING
