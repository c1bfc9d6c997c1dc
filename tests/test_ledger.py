import pytest

from instantwin.errors import (AlreadyRefunded, AlreadyResolved, DuplicateTicket,
                               InsufficientIssuerBalance, InsufficientPayment,
                               InvalidSignatureEncoding, TimeoutNotReached,
                               UnauthorizedSigner, UnknownTicket)
from instantwin.escrow import BalanceBook
from instantwin.registry import IssuerRegistry
from instantwin.ticket_types import TicketStatus, compute_ticket_id

from conftest import BUYER, NEVER_WIN, OTHER_BUYER, TIMEOUT


def test_ticket_id_is_deterministic_and_distinct():
    base = compute_ticket_id(1, BUYER, 7)
    assert base == compute_ticket_id(1, BUYER, 7)
    assert base != compute_ticket_id(2, BUYER, 7)
    assert base != compute_ticket_id(1, OTHER_BUYER, 7)
    assert base != compute_ticket_id(1, BUYER, 8)
    assert base.startswith("0x") and len(base) == 66
    with pytest.raises(ValueError):
        compute_ticket_id(1, BUYER, 2 ** 256)


def test_purchase_commits_ticket(registry, winning_issuer, clock):
    ticket = registry.purchase(winning_issuer, BUYER, 1, 100)
    assert ticket.status == TicketStatus.COMMITTED
    assert ticket.escrow_amount == 100
    assert ticket.purchase_time == clock.now
    assert registry.get_issuer(winning_issuer).counters.sold == 1
    assert registry.account(winning_issuer).escrow.outstanding() == 100


def test_winning_ticket_pays_prize(registry, winning_issuer, oracle, rail):
    ticket = registry.purchase(winning_issuer, BUYER, 1, 100)
    resolved = registry.resolve(ticket.ticket_id, oracle.sign(ticket.ticket_id).to_hex())

    assert resolved.status == TicketStatus.RESOLVED_WIN
    assert resolved.payout == 100
    assert resolved.escrow_amount == 0
    assert rail.balance_of(BUYER) == 100
    issuer = registry.get_issuer(winning_issuer)
    assert issuer.counters.rewarded == 1
    # deposit 1000 + price 100 - prize 100
    assert issuer.operating_balance == 1000
    assert registry.account(winning_issuer).escrow.outstanding() == 0


def test_losing_ticket_forfeits_escrow(registry, losing_issuer, oracle, rail):
    ticket = registry.purchase(losing_issuer, BUYER, 1, 100)
    resolved = registry.resolve(ticket.ticket_id, oracle.sign(ticket.ticket_id))

    assert resolved.status == TicketStatus.RESOLVED_LOSE
    assert resolved.payout == 0
    assert resolved.randomness == oracle.sign(ticket.ticket_id).r
    assert rail.balance_of(BUYER) == 0
    issuer = registry.get_issuer(losing_issuer)
    assert issuer.operating_balance == 1100
    assert issuer.counters.rewarded == 0
    assert issuer.counters.sold == 1


def test_insufficient_payment_creates_nothing(registry, winning_issuer):
    with pytest.raises(InsufficientPayment):
        registry.purchase(winning_issuer, BUYER, 1, 50)
    assert registry.ledger(winning_issuer).tickets == {}
    assert registry.ticket_index == {}
    assert registry.get_issuer(winning_issuer).counters.sold == 0


def test_overpayment_returns_change(registry, winning_issuer, rail):
    ticket = registry.purchase(winning_issuer, BUYER, 1, 150)
    assert ticket.escrow_amount == 100
    assert rail.balance_of(BUYER) == 50


def test_duplicate_purchase(registry, winning_issuer):
    registry.purchase(winning_issuer, BUYER, 1, 100)
    with pytest.raises(DuplicateTicket):
        registry.purchase(winning_issuer, BUYER, 1, 100)
    assert registry.get_issuer(winning_issuer).counters.sold == 1
    assert registry.account(winning_issuer).escrow.outstanding() == 100


def test_refund_before_timeout(registry, winning_issuer, clock):
    ticket = registry.purchase(winning_issuer, BUYER, 1, 100)
    clock.advance(TIMEOUT)
    with pytest.raises(TimeoutNotReached):
        registry.refund_timeout(ticket.ticket_id)
    assert registry.find_ticket(ticket.ticket_id).status == TicketStatus.COMMITTED


def test_refund_after_timeout(registry, winning_issuer, clock, rail):
    ticket = registry.purchase(winning_issuer, BUYER, 1, 100)
    clock.advance(TIMEOUT + 1)
    refunded = registry.refund_timeout(ticket.ticket_id)

    assert refunded.status == TicketStatus.REFUNDED
    assert refunded.payout == 100
    assert rail.balance_of(BUYER) == 100
    issuer = registry.get_issuer(winning_issuer)
    assert issuer.counters.timed_out == 1
    assert issuer.operating_balance == 1000


def test_forged_signature_keeps_ticket_committed(registry, winning_issuer, oracle,
                                                 other_oracle, rail):
    ticket = registry.purchase(winning_issuer, BUYER, 1, 100)
    with pytest.raises(UnauthorizedSigner):
        registry.resolve(ticket.ticket_id, other_oracle.sign(ticket.ticket_id))
    with pytest.raises(InvalidSignatureEncoding):
        registry.resolve(ticket.ticket_id, "0xdeadbeef")

    assert registry.find_ticket(ticket.ticket_id).status == TicketStatus.COMMITTED
    assert rail.journal == []

    # Still resolvable with the real signature
    resolved = registry.resolve(ticket.ticket_id, oracle.sign(ticket.ticket_id))
    assert resolved.status == TicketStatus.RESOLVED_WIN


def test_resolve_twice_pays_once(registry, winning_issuer, oracle, rail):
    ticket = registry.purchase(winning_issuer, BUYER, 1, 100)
    signature = oracle.sign(ticket.ticket_id)
    registry.resolve(ticket.ticket_id, signature)
    with pytest.raises(AlreadyResolved):
        registry.resolve(ticket.ticket_id, signature)
    assert rail.balance_of(BUYER) == 100
    assert registry.get_issuer(winning_issuer).counters.rewarded == 1


def test_terminal_tickets_reject_everything(registry, winning_issuer, oracle, clock):
    resolved = registry.purchase(winning_issuer, BUYER, 1, 100)
    refunded = registry.purchase(winning_issuer, BUYER, 2, 100)
    registry.resolve(resolved.ticket_id, oracle.sign(resolved.ticket_id))
    clock.advance(TIMEOUT + 1)
    registry.refund_timeout(refunded.ticket_id)

    with pytest.raises(AlreadyResolved):
        registry.refund_timeout(resolved.ticket_id)
    with pytest.raises(AlreadyRefunded):
        registry.refund_timeout(refunded.ticket_id)
    with pytest.raises(AlreadyRefunded):
        registry.resolve(refunded.ticket_id, oracle.sign(refunded.ticket_id))

    counters = registry.get_issuer(winning_issuer).counters
    assert (counters.sold, counters.rewarded, counters.timed_out) == (2, 1, 1)


def test_unpayable_prize_leaves_ticket_committed(registry, oracle, rail):
    issuer_id = registry.register_issuer(oracle.public_key, ticket_price=100,
                                         prize_amount=5000, odds_denominator=1,
                                         timeout_window=TIMEOUT, deposit=1000)
    ticket = registry.purchase(issuer_id, BUYER, 1, 100)
    with pytest.raises(InsufficientIssuerBalance):
        registry.resolve(ticket.ticket_id, oracle.sign(ticket.ticket_id))

    issuer = registry.get_issuer(issuer_id)
    assert registry.find_ticket(ticket.ticket_id).status == TicketStatus.COMMITTED
    assert registry.find_ticket(ticket.ticket_id).escrow_amount == 100
    assert issuer.operating_balance == 1000
    assert issuer.counters.rewarded == 0
    assert registry.account(issuer_id).escrow.outstanding() == 100

    registry.deposit(issuer_id, 3900)
    resolved = registry.resolve(ticket.ticket_id, oracle.sign(ticket.ticket_id))
    assert resolved.status == TicketStatus.RESOLVED_WIN
    assert rail.balance_of(BUYER) == 5000
    assert issuer.operating_balance == 0


class FlakyRail(BalanceBook):
    def __init__(self):
        super().__init__()
        self.fail = True

    def transfer(self, recipient, amount, memo=""):
        if self.fail:
            raise RuntimeError("payment rail down")
        super().transfer(recipient, amount, memo)


def test_failed_payout_rolls_back(oracle, clock):
    rail = FlakyRail()
    registry = IssuerRegistry(minimum_deposit=1000, rail=rail, clock=clock)
    issuer_id = registry.register_issuer(oracle.public_key, 100, 100, 1, TIMEOUT, 1000)
    rail.fail = False
    ticket = registry.purchase(issuer_id, BUYER, 1, 100)
    rail.fail = True

    with pytest.raises(RuntimeError):
        registry.resolve(ticket.ticket_id, oracle.sign(ticket.ticket_id))

    stored = registry.find_ticket(ticket.ticket_id)
    issuer = registry.get_issuer(issuer_id)
    assert stored is ticket
    assert ticket.status == TicketStatus.COMMITTED
    assert ticket.escrow_amount == 100
    assert ticket.payout == 0
    assert ticket.randomness is None
    assert issuer.operating_balance == 1000
    assert issuer.counters.rewarded == 0
    assert not registry.account(issuer_id).escrow.get(ticket.ticket_id).released

    rail.fail = False
    resolved = registry.resolve(ticket.ticket_id, oracle.sign(ticket.ticket_id))
    assert resolved.status == TicketStatus.RESOLVED_WIN
    assert rail.balance_of(BUYER) == 100


def test_failed_purchase_change_rolls_back(oracle, clock):
    rail = FlakyRail()
    registry = IssuerRegistry(minimum_deposit=1000, rail=rail, clock=clock)
    issuer_id = registry.register_issuer(oracle.public_key, 100, 100, 1, TIMEOUT, 1000)

    with pytest.raises(RuntimeError):
        registry.purchase(issuer_id, BUYER, 1, 150)
    assert registry.ledger(issuer_id).tickets == {}
    assert registry.account(issuer_id).escrow.outstanding() == 0
    assert registry.get_issuer(issuer_id).counters.sold == 0


class ReentrantRail(BalanceBook):
    """Tries to cash the same ticket again from inside the payout."""

    def __init__(self):
        super().__init__()
        self.registry = None
        self.attack = None
        self.reentry_errors = []

    def transfer(self, recipient, amount, memo=""):
        super().transfer(recipient, amount, memo)
        if self.attack:
            attack, self.attack = self.attack, None
            try:
                attack()
            except (AlreadyResolved, AlreadyRefunded) as e:
                self.reentry_errors.append(type(e))


def test_reentrant_resolve_is_rejected(oracle, clock):
    rail = ReentrantRail()
    registry = IssuerRegistry(minimum_deposit=1000, rail=rail, clock=clock)
    rail.registry = registry
    issuer_id = registry.register_issuer(oracle.public_key, 100, 100, 1, TIMEOUT, 1000)
    ticket = registry.purchase(issuer_id, BUYER, 1, 100)
    signature = oracle.sign(ticket.ticket_id)

    rail.attack = lambda: registry.resolve(ticket.ticket_id, signature)
    registry.resolve(ticket.ticket_id, signature)

    assert rail.reentry_errors == [AlreadyResolved]
    assert rail.balance_of(BUYER) == 100


def test_reentrant_refund_is_rejected(oracle, clock):
    rail = ReentrantRail()
    registry = IssuerRegistry(minimum_deposit=1000, rail=rail, clock=clock)
    issuer_id = registry.register_issuer(oracle.public_key, 100, 100, 1, TIMEOUT, 1000)
    ticket = registry.purchase(issuer_id, BUYER, 1, 100)
    clock.advance(TIMEOUT + 1)

    rail.attack = lambda: registry.refund_timeout(ticket.ticket_id)
    registry.refund_timeout(ticket.ticket_id)

    assert rail.reentry_errors == [AlreadyRefunded]
    assert rail.balance_of(BUYER) == 100


class NestedFailureRail(BalanceBook):
    """Runs another transition inside a payout, then fails that payout."""

    def __init__(self):
        super().__init__()
        self.inner = None

    def transfer(self, recipient, amount, memo=""):
        if self.inner:
            inner, self.inner = self.inner, None
            inner()
            raise RuntimeError("payment rail down")
        super().transfer(recipient, amount, memo)


def test_failed_refund_keeps_nested_loss(oracle, clock):
    rail = NestedFailureRail()
    registry = IssuerRegistry(minimum_deposit=1000, rail=rail, clock=clock)
    issuer_id = registry.register_issuer(oracle.public_key, 100, 100, NEVER_WIN, TIMEOUT, 1000)
    first = registry.purchase(issuer_id, BUYER, 1, 100)
    second = registry.purchase(issuer_id, BUYER, 2, 100)
    clock.advance(TIMEOUT + 1)

    rail.inner = lambda: registry.resolve(second.ticket_id, oracle.sign(second.ticket_id))
    with pytest.raises(RuntimeError):
        registry.refund_timeout(first.ticket_id)

    issuer = registry.get_issuer(issuer_id)
    escrow = registry.account(issuer_id).escrow
    assert first.status == TicketStatus.COMMITTED
    assert not escrow.get(first.ticket_id).released
    assert second.status == TicketStatus.RESOLVED_LOSE
    assert escrow.get(second.ticket_id).released
    # second's forfeited price stays with the issuer
    assert issuer.operating_balance == 1100
    assert escrow.outstanding() == 100
    assert issuer.counters.timed_out == 0

    registry.refund_timeout(first.ticket_id)
    assert rail.balance_of(BUYER) == 100
    assert issuer.operating_balance == 1100
    assert escrow.outstanding() == 0


def test_failed_refund_keeps_nested_win(oracle, clock):
    rail = NestedFailureRail()
    registry = IssuerRegistry(minimum_deposit=1000, rail=rail, clock=clock)
    issuer_id = registry.register_issuer(oracle.public_key, 100, 300, 1, TIMEOUT, 1000)
    first = registry.purchase(issuer_id, BUYER, 1, 100)
    second = registry.purchase(issuer_id, OTHER_BUYER, 1, 100)
    clock.advance(TIMEOUT + 1)

    rail.inner = lambda: registry.resolve(second.ticket_id, oracle.sign(second.ticket_id))
    with pytest.raises(RuntimeError):
        registry.refund_timeout(first.ticket_id)

    issuer = registry.get_issuer(issuer_id)
    assert first.status == TicketStatus.COMMITTED
    assert second.status == TicketStatus.RESOLVED_WIN
    assert rail.balance_of(OTHER_BUYER) == 300
    assert issuer.operating_balance == 800
    assert issuer.counters.rewarded == 1
    assert issuer.counters.timed_out == 0


def test_change_payout_cannot_be_resolved_before_purchase_completes(oracle, clock):
    rail = NestedFailureRail()
    registry = IssuerRegistry(minimum_deposit=1000, rail=rail, clock=clock)
    issuer_id = registry.register_issuer(oracle.public_key, 100, 100, 1, TIMEOUT, 1000)
    ticket_id = compute_ticket_id(issuer_id, BUYER, 1)
    attempts = []

    def resolve_early():
        try:
            registry.ledger(issuer_id).resolve(ticket_id, oracle.sign(ticket_id))
        except UnknownTicket:
            attempts.append("unknown")

    rail.inner = resolve_early
    with pytest.raises(RuntimeError):
        registry.purchase(issuer_id, BUYER, 1, 150)

    assert attempts == ["unknown"]
    assert registry.ledger(issuer_id).tickets == {}
    assert registry.account(issuer_id).escrow.outstanding() == 0
    assert registry.get_issuer(issuer_id).operating_balance == 1000
    assert rail.journal == []


def test_every_ticket_moves_funds_exactly_once(registry, winning_issuer, losing_issuer,
                                              oracle, clock, rail):
    win = registry.purchase(winning_issuer, BUYER, 1, 100)
    lose = registry.purchase(losing_issuer, BUYER, 1, 100)
    refund = registry.purchase(winning_issuer, BUYER, 2, 100)

    registry.resolve(win.ticket_id, oracle.sign(win.ticket_id))
    registry.resolve(lose.ticket_id, oracle.sign(lose.ticket_id))
    clock.advance(TIMEOUT + 1)
    registry.refund_timeout(refund.ticket_id)

    def paid(ticket_id):
        return sum(t.amount for t in rail.journal if t.memo == f"ticket:{ticket_id}")

    assert paid(win.ticket_id) == 100
    assert paid(lose.ticket_id) == 0
    assert paid(refund.ticket_id) == 100

    lost_record = registry.account(losing_issuer).escrow.get(lose.ticket_id)
    assert lost_record.released and lost_record.released_amount == 100
    for issuer_id in (winning_issuer, losing_issuer):
        escrow = registry.account(issuer_id).escrow
        assert all(r.released for r in escrow.records.values())


def test_unknown_ticket(registry, winning_issuer, oracle):
    missing = compute_ticket_id(winning_issuer, BUYER, 99)
    with pytest.raises(UnknownTicket):
        registry.resolve(missing, oracle.sign(missing))
    with pytest.raises(UnknownTicket):
        registry.refund_timeout(missing)


def test_ledger_queries(registry, winning_issuer, oracle, clock):
    ledger = registry.ledger(winning_issuer)
    first = registry.purchase(winning_issuer, BUYER, 1, 100)
    second = registry.purchase(winning_issuer, OTHER_BUYER, 1, 100)
    registry.resolve(first.ticket_id, oracle.sign(first.ticket_id))

    committed = ledger.list_tickets(status=TicketStatus.COMMITTED)
    assert [t.ticket_id for t in committed] == [second.ticket_id]
    assert [t.ticket_id for t in ledger.list_tickets(buyer=BUYER)] == [first.ticket_id]

    assert not ledger.is_refundable(second.ticket_id)
    clock.advance(TIMEOUT + 1)
    assert ledger.is_refundable(second.ticket_id)
    assert not ledger.is_refundable(first.ticket_id)

    view = ledger.ticket_view(second)
    assert view["expires_at"] == second.purchase_time + TIMEOUT
    assert view["refundable"] is True
