"""
Unit Tests for the withdrawal lifecycle

Tests cover:
1. Submission and balance deduction
2. Validation of network, currency, address and minimums
3. Activity requirement
4. State transitions
5. Refund policy
6. Queries and stats
"""

from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal
from uuid import uuid4

import pytest

from reward_ledger.models import (
    AccountStatus,
    ActivityType,
    RequestContext,
    SubmitWithdrawalRequest,
    TransitionWithdrawalRequest,
    WithdrawalStatus,
    WithdrawalStatusChanged,
)
from reward_ledger.service import (
    IdempotencyConflictError,
    InsufficientActivityError,
    InsufficientBalanceError,
    InvalidAddressError,
    InvalidInputError,
    InvalidNetworkError,
    InvalidStateTransitionError,
    WithdrawalNotFoundError,
)
from reward_ledger.tests.helpers import VALID_ADDRESS, FakeClock, make_account, make_service


def withdrawal_request(telegram_id="1001", amount="1000", currency="PEPE", network="bsc-mainnet", address=VALID_ADDRESS):
    return SubmitWithdrawalRequest(
        telegram_id=telegram_id,
        amount=Decimal(amount),
        currency=currency,
        network=network,
        address=address,
    )


def pepe_service(clock=None, **overrides):
    overrides.setdefault("network_fees", {"PEPE": Decimal("50"), "USDT": Decimal("0.03")})
    return make_service(clock, **overrides)


class TestSubmitWithdrawal:
    """Tests for creating withdrawal requests."""

    def test_submit_and_complete(self):
        """Balance 2000, withdraw 1000 with fee 50 -> 950, unchanged on completion."""
        service = pepe_service()
        make_account(service, "1001", balance=2000)

        response = service.submit_withdrawal(withdrawal_request())

        assert response.withdrawal.status == WithdrawalStatus.PENDING
        assert response.withdrawal.network_fee == Decimal("50")
        assert response.withdrawal.method == "bsc-mainnet"
        assert response.new_balance == Decimal("950")
        assert response.log_entry.type == ActivityType.WITHDRAWAL
        assert response.log_entry.reward == Decimal("0")

        completed = service.transition_withdrawal(
            response.withdrawal.id,
            TransitionWithdrawalRequest(status=WithdrawalStatus.COMPLETED, transaction_id="tx123"),
        )

        assert completed.withdrawal.status == WithdrawalStatus.COMPLETED
        assert completed.withdrawal.transaction_id == "tx123"
        assert completed.withdrawal.processed_at is not None
        assert service.get_account("1001").balance == Decimal("950")
        assert service.reconcile("1001") == Decimal("950")

    def test_insufficient_balance_creates_nothing(self):
        service = pepe_service()
        make_account(service, "1001", balance=500)

        with pytest.raises(InsufficientBalanceError):
            service.submit_withdrawal(withdrawal_request(amount="1000"))

        assert service.get_account("1001").balance == Decimal("500")
        assert service.list_withdrawals("1001") == []

    def test_fee_counts_against_balance(self):
        service = pepe_service()
        make_account(service, "1001", balance=1000)

        with pytest.raises(InsufficientBalanceError):
            service.submit_withdrawal(withdrawal_request(amount="1000"))

    def test_currency_is_normalised(self):
        service = pepe_service()
        make_account(service, "1001", balance=2000)

        response = service.submit_withdrawal(withdrawal_request(currency="pepe"))

        assert response.withdrawal.currency == "PEPE"

    def test_unsupported_network(self):
        service = pepe_service()
        make_account(service, "1001", balance=2000)

        with pytest.raises(InvalidNetworkError):
            service.submit_withdrawal(withdrawal_request(network="tron"))

    def test_unsupported_currency(self):
        service = pepe_service()
        make_account(service, "1001", balance=2000)

        with pytest.raises(InvalidInputError, match="BTC"):
            service.submit_withdrawal(withdrawal_request(currency="BTC"))

    @pytest.mark.parametrize("address", ["", "0x123", "52908400098527886E0F7030069857D2E4169EE7", "0x" + "g" * 40])
    def test_invalid_address(self, address):
        service = pepe_service()
        make_account(service, "1001", balance=2000)

        with pytest.raises(InvalidAddressError):
            service.submit_withdrawal(withdrawal_request(address=address))

    def test_below_minimum(self):
        service = pepe_service()
        make_account(service, "1001", balance=2000)

        with pytest.raises(InvalidInputError, match="Minimum"):
            service.submit_withdrawal(withdrawal_request(amount="0.05", currency="USDT"))

    def test_non_positive_amount(self):
        service = pepe_service()
        make_account(service, "1001", balance=2000)

        with pytest.raises(InvalidInputError):
            service.submit_withdrawal(withdrawal_request(amount="0"))

    def test_activity_requirement(self):
        service = pepe_service(min_ad_views_for_withdrawal=2, min_tasks_for_withdrawal=1)
        make_account(service, "1001", balance=2000)

        with pytest.raises(InsufficientActivityError) as exc_info:
            service.submit_withdrawal(withdrawal_request())
        assert exc_info.value.code == "INSUFFICIENT_AD_VIEWS"
        assert exc_info.value.required == 2
        assert exc_info.value.current == 0

        service.watch_ad("1001")
        service.watch_ad("1001")
        with pytest.raises(InsufficientActivityError) as exc_info:
            service.submit_withdrawal(withdrawal_request())
        assert exc_info.value.code == "INSUFFICIENT_TASK_COMPLETION"

        service.complete_task("1001", "t1", Decimal("10"))
        response = service.submit_withdrawal(withdrawal_request())
        assert response.withdrawal.status == WithdrawalStatus.PENDING


class TestWithdrawalTransitions:
    """Tests for the status machine."""

    def _pending(self, service, balance=2000):
        make_account(service, "1001", balance=balance)
        return service.submit_withdrawal(withdrawal_request()).withdrawal

    def test_pending_to_processing_to_completed(self):
        service = pepe_service()
        withdrawal = self._pending(service)

        processing = service.mark_processing(withdrawal.id, admin_notes="batch 7")
        assert processing.withdrawal.status == WithdrawalStatus.PROCESSING
        assert processing.withdrawal.admin_notes == "batch 7"

        completed = service.mark_completed(withdrawal.id, "0xabc")
        assert completed.withdrawal.status == WithdrawalStatus.COMPLETED
        assert completed.log_entry.metadata["previous_status"] == "processing"

    def test_completion_requires_transaction_id(self):
        service = pepe_service()
        withdrawal = self._pending(service)

        with pytest.raises(InvalidInputError):
            service.mark_completed(withdrawal.id, None)

        assert service.get_withdrawal(withdrawal.id).status == WithdrawalStatus.PENDING

    def test_recompleting_without_transaction_id_is_a_transition_error(self):
        service = pepe_service()
        withdrawal = self._pending(service)
        service.mark_completed(withdrawal.id, "tx1")

        with pytest.raises(InvalidStateTransitionError):
            service.mark_completed(withdrawal.id, None)

    def test_request_hash_applies_to_one_transition(self):
        service = pepe_service()
        withdrawal = self._pending(service)
        context = RequestContext(request_hash="op-9")
        service.mark_processing(withdrawal.id, context=context)

        with pytest.raises(IdempotencyConflictError):
            service.mark_completed(withdrawal.id, "tx1", context=context)

        assert service.get_withdrawal(withdrawal.id).status == WithdrawalStatus.PROCESSING

    @pytest.mark.parametrize("new_status", list(WithdrawalStatus))
    def test_completed_is_terminal(self, new_status):
        service = pepe_service()
        withdrawal = self._pending(service)
        service.mark_completed(withdrawal.id, "tx1")

        with pytest.raises(InvalidStateTransitionError):
            service.transition_withdrawal(
                withdrawal.id,
                TransitionWithdrawalRequest(status=new_status, transaction_id="tx2", reason="again"),
            )

        assert service.get_withdrawal(withdrawal.id).status == WithdrawalStatus.COMPLETED

    def test_cannot_move_back_to_pending(self):
        service = pepe_service()
        withdrawal = self._pending(service)
        service.mark_processing(withdrawal.id)

        with pytest.raises(InvalidStateTransitionError):
            service.transition_withdrawal(withdrawal.id, TransitionWithdrawalRequest(status=WithdrawalStatus.PENDING))

    def test_cancel_only_from_pending(self):
        service = pepe_service()
        withdrawal = self._pending(service)
        service.mark_processing(withdrawal.id)

        with pytest.raises(InvalidStateTransitionError):
            service.cancel_withdrawal(withdrawal.id, "changed my mind")

    def test_failed_from_processing(self):
        service = pepe_service()
        withdrawal = self._pending(service)
        service.mark_processing(withdrawal.id)

        response = service.mark_failed(withdrawal.id, "node timeout")

        assert response.withdrawal.status == WithdrawalStatus.FAILED
        assert response.withdrawal.failure_reason == "node timeout"

    def test_unknown_withdrawal(self):
        service = pepe_service()

        with pytest.raises(WithdrawalNotFoundError):
            service.mark_processing(uuid4())

    def test_banned_owner_is_failed_instead_of_processed(self):
        service = pepe_service()
        withdrawal = self._pending(service)
        service.set_account_status("1001", AccountStatus.BAN, "multiple accounts")

        response = service.mark_processing(withdrawal.id)

        assert response.withdrawal.status == WithdrawalStatus.FAILED
        assert response.withdrawal.failure_reason == "multiple accounts"

    def test_concurrent_completion_applies_once(self):
        service = pepe_service()
        withdrawal = self._pending(service)

        def complete(tx):
            try:
                service.mark_completed(withdrawal.id, tx)
                return True
            except InvalidStateTransitionError:
                return False

        with ThreadPoolExecutor(max_workers=4) as pool:
            results = list(pool.map(complete, [f"tx{i}" for i in range(8)]))

        assert results.count(True) == 1
        completions = [
            e for e in service.get_activity_history("1001", ActivityType.WITHDRAWAL).entries
            if e.metadata.get("status") == "completed"
        ]
        assert len(completions) == 1

    def test_status_event_published(self):
        service = pepe_service()
        withdrawal = self._pending(service)
        events = []
        service.publisher.subscribe(events.append)

        service.mark_processing(withdrawal.id)

        changes = [e for e in events if isinstance(e, WithdrawalStatusChanged)]
        assert len(changes) == 1
        assert changes[0].previous_status == WithdrawalStatus.PENDING
        assert changes[0].status == WithdrawalStatus.PROCESSING


class TestRefunds:
    """Tests for the refund policy on failed and cancelled requests."""

    def test_failed_withdrawal_is_refunded(self):
        service = pepe_service()
        make_account(service, "1001", balance=2000)
        withdrawal = service.submit_withdrawal(withdrawal_request()).withdrawal

        response = service.mark_failed(withdrawal.id, "rejected")

        assert response.withdrawal.refunded is True
        assert response.new_balance == Decimal("2000")
        assert response.log_entry.reward == Decimal("1050")
        assert response.log_entry.metadata["refund"] is True
        assert service.reconcile("1001") == Decimal("2000")

    def test_cancelled_withdrawal_is_refunded(self):
        service = pepe_service()
        make_account(service, "1001", balance=2000)
        withdrawal = service.submit_withdrawal(withdrawal_request()).withdrawal

        response = service.cancel_withdrawal(withdrawal.id)

        assert response.withdrawal.status == WithdrawalStatus.CANCELLED
        assert service.get_account("1001").balance == Decimal("2000")

    def test_refund_disabled(self):
        service = pepe_service(refund_failed_withdrawals=False)
        make_account(service, "1001", balance=2000)
        withdrawal = service.submit_withdrawal(withdrawal_request()).withdrawal

        response = service.mark_failed(withdrawal.id, "rejected")

        assert response.withdrawal.refunded is False
        assert response.log_entry.reward == Decimal("0")
        assert service.get_account("1001").balance == Decimal("950")
        assert service.reconcile("1001") == Decimal("950")

    def test_refund_does_not_raise_total_earned(self):
        service = pepe_service()
        make_account(service, "1001", balance=2000)
        withdrawal = service.submit_withdrawal(withdrawal_request()).withdrawal

        service.mark_failed(withdrawal.id)

        assert service.get_account("1001").total_earned == Decimal("2000")


class TestWithdrawalQueries:
    """Tests for listings and stats."""

    def test_listing_order_and_stats(self):
        clock = FakeClock()
        service = pepe_service(clock)
        make_account(service, "1001", balance=5000)
        first = service.submit_withdrawal(withdrawal_request(amount="1000")).withdrawal
        clock.advance(minutes=5)
        second = service.submit_withdrawal(withdrawal_request(amount="500")).withdrawal
        clock.advance(minutes=5)
        third = service.submit_withdrawal(withdrawal_request(amount="200")).withdrawal

        service.mark_completed(first.id, "tx1")
        service.mark_failed(second.id, "bad address")

        assert [w.id for w in service.list_withdrawals("1001")] == [third.id, second.id, first.id]
        assert [w.id for w in service.list_pending_withdrawals()] == [third.id]

        stats = service.get_withdrawal_stats("1001")
        assert stats.total_withdrawn == Decimal("1000")
        assert stats.total_requests == 3
        assert stats.status_breakdown == {"completed": 1, "failed": 1, "pending": 1}
        assert len(stats.recent_withdrawals) == 3

    def test_pending_queue_oldest_first(self):
        clock = FakeClock()
        service = pepe_service(clock)
        make_account(service, "1001", balance=5000)
        make_account(service, "1002", balance=5000)
        older = service.submit_withdrawal(withdrawal_request("1002")).withdrawal
        clock.advance(seconds=1)
        newer = service.submit_withdrawal(withdrawal_request("1001")).withdrawal

        assert [w.id for w in service.list_pending_withdrawals()] == [older.id, newer.id]
