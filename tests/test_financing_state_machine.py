"""Tests for the financing state machine — proves pool, financing, and
repayment invariants hold and every rejected operation is all-or-nothing."""

import pytest
from eth_account import Account
from web3 import Web3

from arcpool.crypto.authorization import DomainParams, sign_authorization
from arcpool.crypto.identifiers import invoice_id_from_number
from arcpool.errors import (
    AlreadyRepaid,
    InsufficientBalance,
    InsufficientLiquidity,
    InsufficientRepayment,
    InvalidAmount,
    InvalidDueDate,
    InvalidFeeRate,
    InvalidIdentity,
    InvalidSignature,
    InvalidTerms,
    InvoiceAlreadyFinanced,
    InvoiceNotFinanced,
    SignatureExpired,
    TransferFailed,
    Unauthorized,
    ValidationError,
)
from arcpool.financing.access import Role
from arcpool.financing.state_machine import FinancingStateMachine
from arcpool.financing.transfer import InMemoryTransferGateway
from arcpool.models.financing import FinancingAuthorization, FinancingState
from arcpool.persistence.event_log import EventKind


ADMIN_KEY = "0x" + "01" * 32
AUTHORIZER_KEY = "0x" + "02" * 32
OTHER_KEY = "0x" + "03" * 32

ADMIN = Account.from_key(ADMIN_KEY).address
AUTHORIZER = Account.from_key(AUTHORIZER_KEY).address
OTHER_SIGNER = Account.from_key(OTHER_KEY).address

SUPPLIER = Web3.to_checksum_address("0x" + "5a" * 20)
BUYER = Web3.to_checksum_address("0x" + "b0" * 20)
LP = Web3.to_checksum_address("0x" + "a1" * 20)
LP2 = Web3.to_checksum_address("0x" + "a2" * 20)
TREASURY = Web3.to_checksum_address("0x" + "fe" * 20)
LEDGER = Web3.to_checksum_address("0x" + "80" * 20)

DOMAIN = DomainParams(verifying_contract=LEDGER, chain_id=421614)

NOW = 1_767_225_600  # 2026-01-01T00:00:00Z
DAY = 86_400


def _make_pool(liquidity: int = 1_000_000, **kwargs):
    gateway = kwargs.pop("gateway", None) or InMemoryTransferGateway()
    pool = FinancingStateMachine(
        domain=DOMAIN,
        admin=ADMIN,
        authorizer=AUTHORIZER,
        gateway=gateway,
        initial_liquidity=liquidity,
        clock=lambda: NOW,
        **kwargs,
    )
    return pool, gateway


def _terms(
    invoice_number: str = "INV-1001",
    payout: int = 98_000,
    repayment: int = 100_000,
    due_date: int = NOW + 90 * DAY,
    nonce: int = 1,
    deadline: int = NOW + 3600,
    supplier: str = SUPPLIER,
) -> FinancingAuthorization:
    return FinancingAuthorization(
        invoice_id=invoice_id_from_number(invoice_number),
        supplier=supplier,
        payout_amount=payout,
        repayment_amount=repayment,
        due_date=due_date,
        nonce=nonce,
        deadline=deadline,
    )


def _finance(
    pool: FinancingStateMachine,
    terms: FinancingAuthorization,
    signer_key: str = AUTHORIZER_KEY,
    caller: str = SUPPLIER,
    now: int = NOW,
    domain: DomainParams = DOMAIN,
):
    signature = sign_authorization(domain, terms, signer_key)
    return pool.withdraw_financing(
        terms.invoice_id,
        terms.payout_amount,
        terms.repayment_amount,
        terms.due_date,
        terms.nonce,
        terms.deadline,
        signature,
        caller=caller,
        now=now,
    )


def _state(pool: FinancingStateMachine):
    """Everything observable, for before/after comparisons."""
    return (
        pool.pool_status(),
        pool.total_interest_earned,
        pool.lp_balance(ADMIN),
        pool.lp_balance(LP),
        pool.event_log.count,
    )


def _assert_pool_invariant(pool: FinancingStateMachine) -> None:
    status = pool.pool_status()
    assert 0 <= status.available <= status.total


class TestInitialization:
    def test_initial_liquidity_attributed_to_admin(self) -> None:
        pool, _ = _make_pool(1_000_000)
        status = pool.pool_status()
        assert status.total == 1_000_000
        assert status.available == 1_000_000
        assert status.utilized == 0
        assert status.financed == 0
        assert pool.lp_balance(ADMIN) == 1_000_000
        assert pool.event_log.events()[0].event_kind == EventKind.DEPOSIT

    def test_defaults(self) -> None:
        pool, _ = _make_pool(0)
        assert pool.protocol_fee_rate_bps == 1000
        assert pool.fee_receiver == ADMIN
        assert pool.authorizer == AUTHORIZER
        assert pool.has_role(ADMIN, Role.ADMIN)
        assert pool.has_role(AUTHORIZER, Role.AUTHORIZER)
        assert pool.event_log.count == 0

    def test_explicit_fee_settings(self) -> None:
        pool, _ = _make_pool(0, fee_receiver=TREASURY, protocol_fee_rate_bps=2500)
        assert pool.fee_receiver == TREASURY
        assert pool.protocol_fee_rate_bps == 2500

    def test_rejects_fee_rate_above_cap(self) -> None:
        with pytest.raises(InvalidFeeRate):
            _make_pool(0, protocol_fee_rate_bps=5001)

    def test_rejects_non_gateway(self) -> None:
        with pytest.raises(TypeError, match="TransferGateway"):
            FinancingStateMachine(DOMAIN, ADMIN, AUTHORIZER, gateway=object())

    def test_independent_instances(self) -> None:
        a, _ = _make_pool(1_000)
        b, _ = _make_pool(5_000)
        a.deposit(LP, 10, now=NOW)
        assert a.pool_status().total == 1_010
        assert b.pool_status().total == 5_000


class TestDepositWithdraw:
    def test_deposit_credits_position_and_pool(self) -> None:
        pool, _ = _make_pool(0)
        assert pool.deposit(LP, 500_000) == 500_000
        assert pool.deposit(LP, 250_000) == 750_000
        status = pool.pool_status()
        assert status.total == 750_000
        assert status.available == 750_000

    def test_deposit_rejects_non_positive(self) -> None:
        pool, _ = _make_pool(0)
        with pytest.raises(InvalidAmount):
            pool.deposit(LP, 0)
        with pytest.raises(InvalidAmount):
            pool.deposit(LP, -5)
        assert pool.pool_status().total == 0
        assert pool.event_log.count == 0

    def test_deposit_rejects_malformed_account(self) -> None:
        pool, _ = _make_pool(0)
        with pytest.raises(InvalidIdentity):
            pool.deposit("not-an-address", 10)

    def test_deposit_then_withdraw_round_trip(self) -> None:
        pool, gateway = _make_pool(1_000_000)
        pool.deposit(LP, 40_000)
        before = pool.pool_status()
        pool.deposit(LP, 25_000)
        pool.withdraw(LP, 25_000)
        assert pool.pool_status() == before
        assert pool.lp_balance(LP) == 40_000
        assert gateway.balance_of(LP) == 25_000

    def test_full_withdrawal_removes_position(self) -> None:
        pool, _ = _make_pool(0)
        pool.deposit(LP, 100)
        assert pool.withdraw(LP, 100) == 0
        assert pool.lp_balance(LP) == 0
        assert pool.pool_status().total == 0

    def test_withdraw_beyond_position(self) -> None:
        pool, _ = _make_pool(1_000_000)
        pool.deposit(LP, 100)
        before = _state(pool)
        with pytest.raises(InsufficientBalance):
            pool.withdraw(LP, 101)
        assert _state(pool) == before

    def test_withdraw_beyond_available_liquidity(self) -> None:
        pool, _ = _make_pool(100_000)
        _finance(pool, _terms(payout=98_000, repayment=100_000))
        before = _state(pool)
        with pytest.raises(InsufficientLiquidity):
            pool.withdraw(ADMIN, 50_000)
        assert _state(pool) == before

    def test_withdraw_rejects_non_positive(self) -> None:
        pool, _ = _make_pool(1_000)
        with pytest.raises(InvalidAmount):
            pool.withdraw(ADMIN, 0)

    def test_failed_withdrawal_transfer_rolls_back(self) -> None:
        pool, gateway = _make_pool(0)
        pool.deposit(LP, 10_000)
        gateway.reject_transfers_to(LP)
        before = _state(pool)
        with pytest.raises(TransferFailed):
            pool.withdraw(LP, 4_000)
        assert _state(pool) == before
        assert gateway.balance_of(LP) == 0

    def test_events_carry_new_total(self) -> None:
        pool, _ = _make_pool(0)
        pool.deposit(LP, 700)
        pool.withdraw(LP, 200)
        deposit, withdrawal = pool.event_log.events()
        assert deposit.payload == {"lp": LP, "amount": 700, "new_total_pool_size": 700}
        assert withdrawal.event_kind == EventKind.WITHDRAWAL
        assert withdrawal.payload["new_total_pool_size"] == 500


class TestWithdrawFinancing:
    def test_happy_path(self) -> None:
        pool, gateway = _make_pool(1_000_000)
        terms = _terms()
        record = _finance(pool, terms)

        assert record.invoice_id == terms.invoice_id
        assert record.supplier == SUPPLIER
        assert record.created_at == NOW
        assert record.repaid is False
        assert pool.is_invoice_financed(terms.invoice_id)
        assert pool.financing_state(terms.invoice_id) == FinancingState.FINANCED

        status = pool.pool_status()
        assert status.total == 1_000_000
        assert status.available == 902_000
        assert status.utilized == 98_000
        assert status.financed == 98_000
        assert gateway.balance_of(SUPPLIER) == 98_000

    def test_lp_positions_untouched_by_financing(self) -> None:
        pool, _ = _make_pool(1_000_000)
        _finance(pool, _terms())
        assert pool.lp_balance(ADMIN) == 1_000_000

    def test_event_emitted(self) -> None:
        pool, _ = _make_pool(1_000_000)
        terms = _terms()
        _finance(pool, terms)
        event = pool.event_log.last_event
        assert event.event_kind == EventKind.FINANCING_WITHDRAWN
        assert event.actor_id == SUPPLIER
        assert event.payload == {
            "invoice_id": terms.invoice_id,
            "supplier": SUPPLIER,
            "amount": 98_000,
            "repayment_amount": 100_000,
            "due_date": terms.due_date,
            "timestamp": NOW,
        }

    def test_accepts_raw_bytes_invoice_id(self) -> None:
        pool, _ = _make_pool(1_000_000)
        terms = _terms()
        signature = sign_authorization(DOMAIN, terms, AUTHORIZER_KEY)
        pool.withdraw_financing(
            bytes.fromhex(terms.invoice_id[2:]), 98_000, 100_000,
            terms.due_date, 1, terms.deadline, signature, caller=SUPPLIER, now=NOW,
        )
        assert pool.is_invoice_financed(terms.invoice_id)

    def test_second_financing_of_same_invoice_rejected(self) -> None:
        pool, _ = _make_pool(1_000_000)
        _finance(pool, _terms())
        after_first = _state(pool)
        with pytest.raises(InvoiceAlreadyFinanced):
            _finance(pool, _terms())
        assert _state(pool) == after_first

    def test_different_nonce_does_not_reopen_invoice(self) -> None:
        pool, _ = _make_pool(1_000_000)
        _finance(pool, _terms(nonce=1))
        with pytest.raises(InvoiceAlreadyFinanced):
            _finance(pool, _terms(nonce=2, payout=50_000, repayment=51_000))

    def test_same_nonce_on_different_invoices_allowed(self) -> None:
        pool, _ = _make_pool(1_000_000)
        _finance(pool, _terms("INV-A", nonce=7))
        _finance(pool, _terms("INV-B", nonce=7))
        assert pool.pool_status().financed == 196_000

    def test_used_check_precedes_expiry(self) -> None:
        pool, _ = _make_pool(1_000_000)
        _finance(pool, _terms())
        with pytest.raises(InvoiceAlreadyFinanced):
            _finance(pool, _terms(deadline=NOW + 10), now=NOW + 20)

    def test_expired_authorization(self) -> None:
        pool, _ = _make_pool(1_000_000)
        before = _state(pool)
        with pytest.raises(SignatureExpired):
            _finance(pool, _terms(deadline=NOW - 1))
        assert _state(pool) == before
        assert not pool.is_invoice_financed(_terms().invoice_id)

    def test_deadline_is_inclusive(self) -> None:
        pool, _ = _make_pool(1_000_000)
        _finance(pool, _terms(deadline=NOW))
        assert pool.is_invoice_financed(_terms().invoice_id)

    def test_expiry_precedes_liquidity(self) -> None:
        pool, _ = _make_pool(1_000)
        with pytest.raises(SignatureExpired):
            _finance(pool, _terms(deadline=NOW - 1))

    def test_insufficient_liquidity(self) -> None:
        pool, _ = _make_pool(50_000)
        before = _state(pool)
        with pytest.raises(InsufficientLiquidity) as exc_info:
            _finance(pool, _terms())
        assert exc_info.value.field == "payout_amount"
        assert _state(pool) == before
        assert not pool.is_invoice_financed(_terms().invoice_id)

    def test_payout_equal_to_available_allowed(self) -> None:
        pool, _ = _make_pool(98_000)
        _finance(pool, _terms())
        assert pool.pool_status().available == 0
        _assert_pool_invariant(pool)

    def test_repayment_must_exceed_payout(self) -> None:
        pool, _ = _make_pool(1_000_000)
        with pytest.raises(InvalidTerms):
            _finance(pool, _terms(payout=100_000, repayment=100_000))
        with pytest.raises(InvalidTerms):
            _finance(pool, _terms(payout=100_000, repayment=99_000))

    def test_zero_payout_rejected(self) -> None:
        pool, _ = _make_pool(1_000_000)
        with pytest.raises(InvalidAmount):
            _finance(pool, _terms(payout=0, repayment=100))

    def test_due_date_must_be_in_future(self) -> None:
        pool, _ = _make_pool(1_000_000)
        with pytest.raises(InvalidDueDate):
            _finance(pool, _terms(due_date=NOW))
        with pytest.raises(InvalidDueDate):
            _finance(pool, _terms(due_date=NOW - DAY))

    @pytest.mark.parametrize("arg,value,field", [
        ("nonce", -1, "nonce"),
        ("repayment", 2**256, "repayment_amount"),
        ("due_date", 2**256, "due_date"),
        ("nonce", 2**256, "nonce"),
        ("deadline", 2**256, "deadline"),
    ])
    def test_values_outside_uint256_rejected(self, arg: str, value: int, field: str) -> None:
        pool, _ = _make_pool(1_000_000)
        before = _state(pool)
        terms = _terms(**{arg: value})
        signature = sign_authorization(DOMAIN, _terms(), AUTHORIZER_KEY)
        with pytest.raises(InvalidTerms) as exc_info:
            pool.withdraw_financing(
                terms.invoice_id, terms.payout_amount, terms.repayment_amount,
                terms.due_date, terms.nonce, terms.deadline, signature,
                caller=SUPPLIER, now=NOW,
            )
        assert exc_info.value.field == field
        assert _state(pool) == before
        assert not pool.is_invoice_financed(terms.invoice_id)

    def test_validation_errors_are_value_errors(self) -> None:
        pool, _ = _make_pool(1_000_000)
        with pytest.raises(ValidationError):
            _finance(pool, _terms(due_date=NOW))
        with pytest.raises(ValueError):
            _finance(pool, _terms(due_date=NOW))

    def test_wrong_signer(self) -> None:
        pool, _ = _make_pool(1_000_000)
        before = _state(pool)
        with pytest.raises(InvalidSignature):
            _finance(pool, _terms(), signer_key=OTHER_KEY)
        assert _state(pool) == before
        assert not pool.is_invoice_financed(_terms().invoice_id)

    def test_signature_bound_to_supplier(self) -> None:
        pool, _ = _make_pool(1_000_000)
        other_supplier = Web3.to_checksum_address("0x" + "5b" * 20)
        with pytest.raises(InvalidSignature):
            _finance(pool, _terms(supplier=SUPPLIER), caller=other_supplier)

    def test_signature_bound_to_terms(self) -> None:
        pool, _ = _make_pool(1_000_000)
        terms = _terms()
        signature = sign_authorization(DOMAIN, terms, AUTHORIZER_KEY)
        with pytest.raises(InvalidSignature):
            pool.withdraw_financing(
                terms.invoice_id, terms.payout_amount, terms.repayment_amount - 1,
                terms.due_date, terms.nonce, terms.deadline, signature,
                caller=SUPPLIER, now=NOW,
            )

    def test_signature_bound_to_domain(self) -> None:
        pool, _ = _make_pool(1_000_000)
        other_chain = DomainParams(verifying_contract=LEDGER, chain_id=1)
        with pytest.raises(InvalidSignature):
            _finance(pool, _terms(), domain=other_chain)

    def test_malformed_signature(self) -> None:
        pool, _ = _make_pool(1_000_000)
        terms = _terms()
        with pytest.raises(InvalidSignature):
            pool.withdraw_financing(
                terms.invoice_id, terms.payout_amount, terms.repayment_amount,
                terms.due_date, terms.nonce, terms.deadline, "0x1234",
                caller=SUPPLIER, now=NOW,
            )

    def test_failed_payout_does_not_consume_invoice(self) -> None:
        pool, gateway = _make_pool(1_000_000)
        gateway.reject_transfers_to(SUPPLIER)
        before = _state(pool)
        with pytest.raises(TransferFailed):
            _finance(pool, _terms())
        assert _state(pool) == before
        assert not pool.is_invoice_financed(_terms().invoice_id)
        assert pool.get_financing(_terms().invoice_id) is None

        # The same signed authorization succeeds once the supplier can receive
        gateway.reject_transfers_to(SUPPLIER, reject=False)
        _finance(pool, _terms())
        assert pool.is_invoice_financed(_terms().invoice_id)

    def test_returned_record_is_a_copy(self) -> None:
        pool, _ = _make_pool(1_000_000)
        record = _finance(pool, _terms())
        record.repaid = True
        assert pool.get_financing(record.invoice_id).repaid is False


class TestRepayment:
    def test_on_time_repayment(self) -> None:
        pool, gateway = _make_pool(1_000_000)
        terms = _terms()
        _finance(pool, terms)
        before = pool.pool_status()

        breakdown = pool.repay(terms.invoice_id, 100_000, caller=BUYER, now=NOW + 30 * DAY)

        assert breakdown.late_fee == 0
        assert breakdown.required_amount == 100_000
        assert breakdown.total_interest == 2_000
        assert breakdown.protocol_fee == 200
        assert breakdown.lp_interest == 1_800
        assert breakdown.refund == 0

        after = pool.pool_status()
        assert after.available - before.available == 99_800
        assert after.total - before.total == 1_800
        assert pool.total_interest_earned == 2_000
        assert gateway.balance_of(ADMIN) == 200
        assert pool.financing_state(terms.invoice_id) == FinancingState.REPAID
        _assert_pool_invariant(pool)

    def test_repayment_on_due_date_has_no_late_fee(self) -> None:
        pool, _ = _make_pool(1_000_000)
        terms = _terms()
        _finance(pool, terms)
        breakdown = pool.repay(terms.invoice_id, 100_000, caller=BUYER, now=terms.due_date)
        assert breakdown.late_fee == 0

    def test_late_repayment(self) -> None:
        pool, gateway = _make_pool(1_000_000)
        terms = _terms()
        _finance(pool, terms)
        before = pool.pool_status()

        breakdown = pool.repay(
            terms.invoice_id, 110_000, caller=BUYER, now=terms.due_date + 10 * DAY + 5,
        )

        assert breakdown.late_fee == 10_000
        assert breakdown.required_amount == 110_000
        assert breakdown.total_interest == 12_000
        assert breakdown.protocol_fee == 1_200
        assert breakdown.lp_interest == 10_800

        after = pool.pool_status()
        assert after.available - before.available == 98_000 + 10_800
        assert after.total - before.total == 10_800
        assert gateway.balance_of(ADMIN) == 1_200

    def test_late_repayment_partial_day_not_charged(self) -> None:
        pool, _ = _make_pool(1_000_000)
        terms = _terms()
        _finance(pool, terms)
        quote = pool.quote_repayment(terms.invoice_id, now=terms.due_date + DAY - 1)
        assert quote.late_fee == 0

    def test_late_fee_capped(self) -> None:
        pool, _ = _make_pool(1_000_000)
        terms = _terms()
        _finance(pool, terms)
        breakdown = pool.repay(
            terms.invoice_id, 130_000, caller=BUYER, now=terms.due_date + 45 * DAY,
        )
        assert breakdown.late_fee == 30_000
        assert breakdown.total_interest == 32_000

    def test_insufficient_repayment(self) -> None:
        pool, _ = _make_pool(1_000_000)
        terms = _terms()
        _finance(pool, terms)
        before = _state(pool)
        with pytest.raises(InsufficientRepayment) as exc_info:
            pool.repay(terms.invoice_id, 109_999, caller=BUYER, now=terms.due_date + 10 * DAY)
        assert exc_info.value.field == "supplied_amount"
        assert _state(pool) == before
        assert pool.financing_state(terms.invoice_id) == FinancingState.FINANCED

    def test_overpayment_refunded(self) -> None:
        pool, gateway = _make_pool(1_000_000)
        terms = _terms()
        _finance(pool, terms)
        breakdown = pool.repay(terms.invoice_id, 100_500, caller=BUYER, now=NOW + DAY)
        assert breakdown.refund == 500
        assert gateway.balance_of(BUYER) == 500
        assert pool.pool_status().total == 1_001_800
        repayment = pool.event_log.events(EventKind.REPAYMENT)[0]
        assert repayment.payload["refund"] == 500
        assert repayment.payload["amount"] == 100_000

    def test_repay_unfinanced_invoice(self) -> None:
        pool, _ = _make_pool(1_000_000)
        with pytest.raises(InvoiceNotFinanced):
            pool.repay(invoice_id_from_number("INV-NOPE"), 100_000, caller=BUYER)

    def test_repay_twice(self) -> None:
        pool, _ = _make_pool(1_000_000)
        terms = _terms()
        _finance(pool, terms)
        pool.repay(terms.invoice_id, 100_000, caller=BUYER, now=NOW + DAY)
        after_first = _state(pool)
        with pytest.raises(AlreadyRepaid):
            pool.repay(terms.invoice_id, 100_000, caller=BUYER, now=NOW + 2 * DAY)
        assert _state(pool) == after_first

    def test_repaid_invoice_cannot_be_refinanced(self) -> None:
        pool, _ = _make_pool(1_000_000)
        terms = _terms()
        _finance(pool, terms)
        pool.repay(terms.invoice_id, 100_000, caller=BUYER, now=NOW + DAY)
        with pytest.raises(InvoiceAlreadyFinanced):
            _finance(pool, _terms(nonce=99), now=NOW + 2 * DAY)

    def test_supplier_may_repay(self) -> None:
        pool, _ = _make_pool(1_000_000)
        terms = _terms()
        _finance(pool, terms)
        pool.repay(terms.invoice_id, 100_000, caller=SUPPLIER, now=NOW + DAY)
        assert pool.financing_state(terms.invoice_id) == FinancingState.REPAID

    def test_zero_fee_rate_skips_fee_transfer(self) -> None:
        pool, gateway = _make_pool(1_000_000, protocol_fee_rate_bps=0)
        terms = _terms()
        _finance(pool, terms)
        breakdown = pool.repay(terms.invoice_id, 100_000, caller=BUYER, now=NOW + DAY)
        assert breakdown.protocol_fee == 0
        assert breakdown.lp_interest == 2_000
        assert all(not r.reference.startswith("protocol_fee") for r in gateway.receipts)

    def test_fee_goes_to_configured_receiver(self) -> None:
        pool, gateway = _make_pool(1_000_000, fee_receiver=TREASURY)
        terms = _terms()
        _finance(pool, terms)
        pool.repay(terms.invoice_id, 100_000, caller=BUYER, now=NOW + DAY)
        assert gateway.balance_of(TREASURY) == 200
        assert gateway.balance_of(ADMIN) == 0

    def test_failed_fee_transfer_rolls_back(self) -> None:
        pool, gateway = _make_pool(1_000_000, fee_receiver=TREASURY)
        terms = _terms()
        _finance(pool, terms)
        gateway.reject_transfers_to(TREASURY)
        before = _state(pool)
        with pytest.raises(TransferFailed):
            pool.repay(terms.invoice_id, 100_000, caller=BUYER, now=NOW + DAY)
        assert _state(pool) == before
        assert pool.financing_state(terms.invoice_id) == FinancingState.FINANCED

    def test_failed_refund_reverses_fee_transfer(self) -> None:
        pool, gateway = _make_pool(1_000_000, fee_receiver=TREASURY)
        terms = _terms()
        _finance(pool, terms)
        gateway.reject_transfers_to(BUYER)
        before = _state(pool)
        with pytest.raises(TransferFailed):
            pool.repay(terms.invoice_id, 100_500, caller=BUYER, now=NOW + DAY)
        assert _state(pool) == before
        assert gateway.balance_of(TREASURY) == 0
        assert pool.financing_state(terms.invoice_id) == FinancingState.FINANCED

        # Paying the exact amount needs no refund and succeeds
        pool.repay(terms.invoice_id, 100_000, caller=BUYER, now=NOW + DAY)
        assert gateway.balance_of(TREASURY) == 200

    def test_repayment_events(self) -> None:
        pool, _ = _make_pool(1_000_000, fee_receiver=TREASURY)
        terms = _terms()
        _finance(pool, terms)
        pool.repay(terms.invoice_id, 110_000, caller=BUYER, now=terms.due_date + 10 * DAY)
        kinds = [e.event_kind for e in pool.event_log.events()]
        assert kinds == [
            EventKind.DEPOSIT,
            EventKind.FINANCING_WITHDRAWN,
            EventKind.REPAYMENT,
            EventKind.INTEREST_DISTRIBUTED,
        ]
        interest = pool.event_log.last_event.payload
        assert interest == {
            "invoice_id": terms.invoice_id,
            "total_interest": 12_000,
            "protocol_fee": 1_200,
            "lp_interest": 10_800,
            "fee_receiver": TREASURY,
        }


class TestRepaymentQuote:
    def test_quote_matches_repayment(self) -> None:
        pool, _ = _make_pool(1_000_000)
        terms = _terms()
        _finance(pool, terms)
        when = terms.due_date + 3 * DAY
        quote = pool.quote_repayment(terms.invoice_id, now=when)
        breakdown = pool.repay(terms.invoice_id, quote.required_amount, caller=BUYER, now=when)
        assert breakdown == quote

    def test_quote_does_not_mutate(self) -> None:
        pool, _ = _make_pool(1_000_000)
        terms = _terms()
        _finance(pool, terms)
        before = _state(pool)
        pool.quote_repayment(terms.invoice_id)
        assert _state(pool) == before

    def test_quote_unknown_invoice(self) -> None:
        pool, _ = _make_pool(1_000_000)
        with pytest.raises(InvoiceNotFinanced):
            pool.quote_repayment(invoice_id_from_number("INV-NOPE"))

    def test_quote_repaid_invoice(self) -> None:
        pool, _ = _make_pool(1_000_000)
        terms = _terms()
        _finance(pool, terms)
        pool.repay(terms.invoice_id, 100_000, caller=BUYER, now=NOW + DAY)
        with pytest.raises(AlreadyRepaid):
            pool.quote_repayment(terms.invoice_id)


class TestAdministration:
    def test_rotate_authorizer(self) -> None:
        pool, _ = _make_pool(1_000_000)
        assert pool.rotate_authorizer(OTHER_SIGNER, caller=ADMIN) == OTHER_SIGNER
        assert pool.authorizer == OTHER_SIGNER
        assert not pool.has_role(AUTHORIZER, Role.AUTHORIZER)

        with pytest.raises(InvalidSignature):
            _finance(pool, _terms("INV-OLD"), signer_key=AUTHORIZER_KEY)
        _finance(pool, _terms("INV-NEW"), signer_key=OTHER_KEY)

        event = pool.event_log.events(EventKind.AUTHORIZER_UPDATED)[0]
        assert event.payload == {"old_authorizer": AUTHORIZER, "new_authorizer": OTHER_SIGNER}

    def test_rotate_requires_admin(self) -> None:
        pool, _ = _make_pool(0)
        with pytest.raises(Unauthorized):
            pool.rotate_authorizer(OTHER_SIGNER, caller=AUTHORIZER)
        assert pool.authorizer == AUTHORIZER
        assert pool.event_log.count == 0

    def test_rotate_rejects_null(self) -> None:
        pool, _ = _make_pool(0)
        with pytest.raises(InvalidIdentity):
            pool.rotate_authorizer(None, caller=ADMIN)
        with pytest.raises(InvalidIdentity):
            pool.rotate_authorizer("0x" + "00" * 20, caller=ADMIN)
        assert pool.authorizer == AUTHORIZER
        assert pool.has_role(AUTHORIZER, Role.AUTHORIZER)

    def test_set_protocol_fee_rate(self) -> None:
        pool, _ = _make_pool(1_000_000)
        pool.set_protocol_fee_rate(5000, caller=ADMIN)
        assert pool.protocol_fee_rate_bps == 5000
        terms = _terms()
        _finance(pool, terms)
        breakdown = pool.repay(terms.invoice_id, 100_000, caller=BUYER, now=NOW + DAY)
        assert breakdown.protocol_fee == 1_000
        assert breakdown.lp_interest == 1_000

    def test_fee_rate_applies_at_repayment_time(self) -> None:
        pool, _ = _make_pool(1_000_000)
        terms = _terms()
        _finance(pool, terms)
        pool.set_protocol_fee_rate(2000, caller=ADMIN)
        breakdown = pool.repay(terms.invoice_id, 100_000, caller=BUYER, now=NOW + DAY)
        assert breakdown.protocol_fee == 400

    def test_fee_rate_cap(self) -> None:
        pool, _ = _make_pool(0)
        with pytest.raises(InvalidFeeRate):
            pool.set_protocol_fee_rate(5001, caller=ADMIN)
        assert pool.protocol_fee_rate_bps == 1000

    def test_fee_rate_requires_admin(self) -> None:
        pool, _ = _make_pool(0)
        with pytest.raises(Unauthorized):
            pool.set_protocol_fee_rate(0, caller=LP)
        assert pool.protocol_fee_rate_bps == 1000

    def test_set_fee_receiver(self) -> None:
        pool, _ = _make_pool(0)
        pool.set_fee_receiver(TREASURY, caller=ADMIN)
        assert pool.fee_receiver == TREASURY
        event = pool.event_log.last_event
        assert event.event_kind == EventKind.FEE_RECEIVER_UPDATED
        assert event.payload == {"old_receiver": ADMIN, "new_receiver": TREASURY}

    def test_fee_receiver_requires_admin(self) -> None:
        pool, _ = _make_pool(0)
        with pytest.raises(Unauthorized):
            pool.set_fee_receiver(TREASURY, caller=TREASURY)
        assert pool.fee_receiver == ADMIN

    def test_fee_receiver_rejects_null(self) -> None:
        pool, _ = _make_pool(0)
        with pytest.raises(InvalidIdentity):
            pool.set_fee_receiver("0x" + "00" * 20, caller=ADMIN)
        assert pool.fee_receiver == ADMIN


class TestInvariants:
    def test_available_never_exceeds_total(self) -> None:
        pool, _ = _make_pool(0)
        pool.deposit(LP, 300_000)
        pool.deposit(LP2, 200_000)
        _assert_pool_invariant(pool)

        a = _terms("INV-A", payout=190_000, repayment=200_000)
        b = _terms("INV-B", payout=290_000, repayment=300_000)
        _finance(pool, a)
        _assert_pool_invariant(pool)
        _finance(pool, b)
        _assert_pool_invariant(pool)
        assert pool.pool_status().available == 20_000

        pool.withdraw(LP2, 20_000)
        _assert_pool_invariant(pool)

        pool.repay(a.invoice_id, 200_000, caller=BUYER, now=NOW + DAY)
        _assert_pool_invariant(pool)
        pool.repay(b.invoice_id, 390_000, caller=BUYER, now=b.due_date + 30 * DAY)
        _assert_pool_invariant(pool)

        pool.withdraw(LP, 300_000)
        pool.withdraw(LP2, 180_000)
        _assert_pool_invariant(pool)
        status = pool.pool_status()
        assert status.total == status.available
        assert status.total == pool.total_interest_earned - (1_000 + 10_000)

    def test_lp_positions_trail_total_by_interest(self) -> None:
        pool, _ = _make_pool(0)
        pool.deposit(LP, 500_000)
        terms = _terms()
        _finance(pool, terms)
        pool.repay(terms.invoice_id, 100_000, caller=BUYER, now=NOW + DAY)
        assert pool.lp_balance(LP) == 500_000
        assert pool.pool_status().total == 500_000 + 1_800

    def test_record_created_once_and_never_unrepaid(self) -> None:
        pool, _ = _make_pool(1_000_000)
        terms = _terms()
        _finance(pool, terms)
        created = pool.get_financing(terms.invoice_id)
        pool.repay(terms.invoice_id, 100_000, caller=BUYER, now=NOW + DAY)
        repaid = pool.get_financing(terms.invoice_id)
        assert repaid.repaid is True
        assert (repaid.payout_amount, repaid.repayment_amount, repaid.due_date, repaid.created_at) == (
            created.payout_amount, created.repayment_amount, created.due_date, created.created_at,
        )
        with pytest.raises(AlreadyRepaid):
            pool.repay(terms.invoice_id, 100_000, caller=BUYER, now=NOW + DAY)
        assert pool.get_financing(terms.invoice_id).repaid is True


class _IrreversibleGateway(InMemoryTransferGateway):
    """Settles transfers but cannot take them back."""

    def reverse(self, receipt) -> None:
        raise RuntimeError("reversal unavailable")


class TestRollbackWhenReversalFails:
    def test_ledger_restored_and_original_error_raised(self) -> None:
        gateway = _IrreversibleGateway()
        pool, _ = _make_pool(1_000_000, gateway=gateway, fee_receiver=TREASURY)
        terms = _terms()
        _finance(pool, terms)
        gateway.reject_transfers_to(BUYER)
        before = _state(pool)

        with pytest.raises(TransferFailed):
            pool.repay(terms.invoice_id, 100_500, caller=BUYER, now=NOW + DAY)

        assert _state(pool) == before
        assert pool.financing_state(terms.invoice_id) == FinancingState.FINANCED
        assert pool.total_interest_earned == 0

    def test_guard_released(self) -> None:
        gateway = _IrreversibleGateway()
        pool, _ = _make_pool(1_000_000, gateway=gateway, fee_receiver=TREASURY)
        terms = _terms()
        _finance(pool, terms)
        gateway.reject_transfers_to(BUYER)
        with pytest.raises(TransferFailed):
            pool.repay(terms.invoice_id, 100_500, caller=BUYER, now=NOW + DAY)

        pool.repay(terms.invoice_id, 100_000, caller=BUYER, now=NOW + DAY)
        assert pool.financing_state(terms.invoice_id) == FinancingState.REPAID


class TestEventCommit:
    def test_failing_subscriber_does_not_lose_events(self) -> None:
        pool, _ = _make_pool(1_000_000)
        terms = _terms()
        _finance(pool, terms)

        def fail_on_repayment(event) -> None:
            if event.event_kind == EventKind.REPAYMENT:
                raise RuntimeError("subscriber down")

        seen = []
        pool.event_log.subscribe(fail_on_repayment)
        pool.event_log.subscribe(seen.append)

        breakdown = pool.repay(terms.invoice_id, 100_000, caller=BUYER, now=NOW + DAY)

        assert breakdown.lp_interest == 1_800
        assert pool.financing_state(terms.invoice_id) == FinancingState.REPAID
        kinds = [e.event_kind for e in pool.event_log.events()]
        assert kinds[-2:] == [EventKind.REPAYMENT, EventKind.INTEREST_DISTRIBUTED]
        assert [e.event_kind for e in seen] == kinds[-2:]

    def test_subscriber_may_call_back_after_commit(self) -> None:
        pool, _ = _make_pool(0)
        balances = []

        def top_up(event) -> None:
            if event.payload["lp"] == LP:
                balances.append(pool.deposit(LP2, 1))

        pool.event_log.subscribe(top_up)
        pool.deposit(LP, 100)

        assert balances == [1]
        assert pool.lp_balance(LP2) == 1
        assert pool.pool_status().total == 101
