"""
conftest.py - Shared pytest fixtures for stakeledger tests

Provides common fixtures used across unit, functional and conformance tests:
- A logical clock pinned to a fixed start time
- Bare components (wallet ledger, stake book, recorder, resolver, manager)
- Engines (empty, funded, test-mode)
"""

import pytest
from datetime import datetime, timedelta
from decimal import Decimal

from stakeledger import (
    StakingEngine, EngineConfig, LogicalClock,
    WalletLedger, StakeBook, TransactionRecorder,
    PayoutRuleResolver, StakeLifecycleManager, PaymentDesk, PayoutScheduler,
    TransactionType, default_payout_rules,
)


START = datetime(2025, 1, 1, 9, 0)


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def day(n: int) -> datetime:
    """START shifted by n days (same time of day)."""
    return START + timedelta(days=n)


# =============================================================================
# COMPONENT FIXTURES
# =============================================================================

@pytest.fixture
def start_time():
    return START


@pytest.fixture
def clock():
    return LogicalClock(START)


@pytest.fixture
def config():
    return EngineConfig()


@pytest.fixture
def wallets(clock):
    """Wallet ledger in test mode so set_balance() can corrupt a wallet."""
    return WalletLedger(clock, lock_timeout=0.5, test_mode=True)


@pytest.fixture
def book():
    return StakeBook()


@pytest.fixture
def recorder(wallets, book):
    return TransactionRecorder(wallets, book)


@pytest.fixture
def resolver():
    return PayoutRuleResolver(default_payout_rules())


@pytest.fixture
def manager(recorder, resolver, clock, config):
    return StakeLifecycleManager(recorder, resolver, clock, config)


@pytest.fixture
def desk(manager):
    return PaymentDesk(manager)


@pytest.fixture
def scheduler(manager):
    return PayoutScheduler(manager, workers=2)


@pytest.fixture
def funded_manager(manager, wallets):
    """Manager whose users alice and bob hold 25000 each."""
    wallets.apply_entry("alice", TransactionType.TOPUP, Decimal("25000"))
    wallets.apply_entry("bob", TransactionType.TOPUP, Decimal("25000"))
    return manager


# =============================================================================
# ENGINE FIXTURES
# =============================================================================

@pytest.fixture
def engine():
    """Empty engine with the default rules, starting at START."""
    return StakingEngine(initial_time=START)


@pytest.fixture
def test_engine():
    """Engine with set_balance() enabled for integrity tests."""
    return StakingEngine(initial_time=START, test_mode=True)


@pytest.fixture
def funded_engine(engine):
    """Engine where alice holds 25000."""
    engine.top_up("alice", Decimal("25000"))
    return engine
