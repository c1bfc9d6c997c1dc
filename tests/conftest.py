"""Shared fixtures: fake clock, deterministic issuer keys, registries."""

import pytest

from instantwin.escrow import BalanceBook
from instantwin.oracle import SigningOracle
from instantwin.registry import IssuerRegistry

ISSUER_KEY = "0x" + "11" * 32
OTHER_KEY = "0x" + "22" * 32

BUYER = "0x00000000000000000000000000000000000000b1"
OTHER_BUYER = "0x00000000000000000000000000000000000000b2"

START_TIME = 1_700_000_000
TIMEOUT = 3600

# r is always in [1, N) and N < 2**256 - 1, so r % NEVER_WIN != 0
NEVER_WIN = 2 ** 256 - 1


class FakeClock:
    def __init__(self, now: int = START_TIME):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def oracle():
    return SigningOracle(ISSUER_KEY)


@pytest.fixture
def other_oracle():
    return SigningOracle(OTHER_KEY)


@pytest.fixture
def rail():
    return BalanceBook()


@pytest.fixture
def registry(clock, rail):
    return IssuerRegistry(minimum_deposit=1000, rail=rail, clock=clock)


@pytest.fixture
def winning_issuer(registry, oracle):
    """price=100, prize=100, odds 1: every resolved ticket wins."""
    return registry.register_issuer(oracle.public_key, ticket_price=100, prize_amount=100,
                                    odds_denominator=1, timeout_window=TIMEOUT, deposit=1000)


@pytest.fixture
def losing_issuer(registry, oracle):
    """Every resolved ticket loses."""
    return registry.register_issuer(oracle.public_key, ticket_price=100, prize_amount=1000,
                                    odds_denominator=NEVER_WIN, timeout_window=TIMEOUT,
                                    deposit=1000)
