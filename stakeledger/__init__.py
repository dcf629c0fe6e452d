"""
stakeledger - Staking Ledger Engine

Fixed-term stakes that earn a daily payout, on top of per-user wallet
ledgers with an append-only transaction log.

Usage:
    from datetime import datetime
    from stakeledger import StakingEngine, FundingMethod

    engine = StakingEngine(initial_time=datetime(2025, 1, 1, 9, 0))

    # Fund the wallet and stake from it
    engine.top_up("alice", 25000)
    receipt = engine.create_stake("alice", 10000)          # tier 10000-99999 -> 600/day

    # Or stake through a payment gateway
    pending = engine.create_stake("bob", 5000, FundingMethod.GATEWAY)
    engine.confirm_payment(pending.stake_id)

    # Daily payouts
    engine.advance_time(datetime(2025, 1, 2, 9, 0))
    summary = engine.run_payouts()
    engine.get_wallet("alice").balance                     # Decimal('15600.00')
"""

# Core types
from .core import (
    TransactionType,
    StakeState,
    FundingMethod,
    Gateway,
    PaymentStatus,
    CancellationPolicy,
    PayoutResult,
    PayoutRule,
    Stake,
    Wallet,
    Transaction,
    Payment,
    PayoutRecord,
    PayoutOutcome,
    StakeReceipt,
    EngineConfig,
    LogicalClock,
    StakeLedgerError,
    InvalidAmount,
    NoMatchingRule,
    InsufficientBalance,
    InvalidTransition,
    NotFound,
    Busy,
    ConfigurationConflict,
    LedgerIntegrityError,
    to_money,
    signed_amount,
    MONEY_QUANTUM,
    ZERO,
    DEFAULT_MINIMUM_STAKE,
    DEFAULT_DURATION_DAYS,
    DEFAULT_PAYMENT_EXPIRY,
)

# Payout rules
from .rules import (
    PayoutRuleResolver,
    RuleSetIssue,
    StakeProjection,
    validate_rule_set,
    project_stake,
    default_payout_rules,
)

# Ledger and records
from .wallet import WalletLedger
from .stakes import StakeBook
from .recorder import TransactionRecorder, AtomicUnit, StakeChange, StaleWrite

# Stake lifecycle
from .lifecycle import StakeLifecycleManager, compute_refund
from .payments import PaymentDesk, new_payment, PAYMENT_EXPIRED_REASON
from .scheduler import PayoutScheduler, SchedulerRunSummary

# Engine
from .engine import StakingEngine, DashboardStats


__all__ = [
    # Enums
    'TransactionType',
    'StakeState',
    'FundingMethod',
    'Gateway',
    'PaymentStatus',
    'CancellationPolicy',
    'PayoutResult',
    # Records
    'PayoutRule',
    'Stake',
    'Wallet',
    'Transaction',
    'Payment',
    'PayoutRecord',
    'PayoutOutcome',
    'StakeReceipt',
    'EngineConfig',
    'LogicalClock',
    # Exceptions
    'StakeLedgerError',
    'InvalidAmount',
    'NoMatchingRule',
    'InsufficientBalance',
    'InvalidTransition',
    'NotFound',
    'Busy',
    'ConfigurationConflict',
    'LedgerIntegrityError',
    # Money
    'to_money',
    'signed_amount',
    'MONEY_QUANTUM',
    'ZERO',
    'DEFAULT_MINIMUM_STAKE',
    'DEFAULT_DURATION_DAYS',
    'DEFAULT_PAYMENT_EXPIRY',
    # Rules
    'PayoutRuleResolver',
    'RuleSetIssue',
    'StakeProjection',
    'validate_rule_set',
    'project_stake',
    'default_payout_rules',
    # Components
    'WalletLedger',
    'StakeBook',
    'TransactionRecorder',
    'AtomicUnit',
    'StakeChange',
    'StaleWrite',
    'StakeLifecycleManager',
    'compute_refund',
    'PaymentDesk',
    'new_payment',
    'PAYMENT_EXPIRED_REASON',
    'PayoutScheduler',
    'SchedulerRunSummary',
    # Engine
    'StakingEngine',
    'DashboardStats',
]

__version__ = '1.0.0'
