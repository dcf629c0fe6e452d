"""
wallet.py - Per-user wallet balances and append-only transaction logs

WalletLedger is the only module that changes a wallet balance. Every change
is a Transaction appended to the user's log, and the wallet balance always
equals the balance_after of the last entry (the ledger invariant).

Key responsibilities:
    - One Wallet and one ordered transaction log per user
    - Per-user mutual exclusion with a bounded wait (Busy on timeout)
    - Integrity check before every mutation; a user whose log disagrees with
      the wallet is frozen until reconciled
    - Read-side helpers: paging, verification, balances
"""

from __future__ import annotations
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from decimal import Decimal
import copy
import logging
import threading
from typing import Any, Dict, Iterator, List, Mapping, Optional

from .core import (
    Transaction, TransactionType, Wallet, LogicalClock,
    CREDIT_TYPES, DEBIT_TYPES, ZERO, DEFAULT_LOCK_TIMEOUT, DEFAULT_PAGE_SIZE,
    StakeLedgerError, InsufficientBalance, NotFound, Busy, LedgerIntegrityError,
    signed_amount, to_money,
)

logger = logging.getLogger(__name__)


@dataclass
class _Account:
    """Mutable per-user container. Only touched while holding `lock`."""
    wallet: Wallet
    transactions: List[Transaction] = field(default_factory=list)
    lock: threading.Lock = field(default_factory=threading.Lock)
    frozen_reason: Optional[str] = None

    @property
    def user_id(self) -> str:
        return self.wallet.user_id

    @property
    def tail_balance(self) -> Decimal:
        return self.transactions[-1].balance_after if self.transactions else ZERO


class WalletLedger:
    """
    Per-user ledger of wallet transactions.

    Thread Safety:
        Mutations for one user are serialized by that user's lock. Different
        users proceed in parallel. Lock acquisition waits at most
        lock_timeout seconds and then raises Busy.

    Example:
        wallets = WalletLedger(LogicalClock(datetime(2025, 1, 1)))
        wallets.apply_entry("alice", TransactionType.TOPUP, Decimal("1000"))
        wallets.apply_entry("alice", TransactionType.WITHDRAWAL, Decimal("-250"))
        assert wallets.get_wallet("alice").balance == Decimal("750")
    """

    def __init__(
        self,
        clock: Optional[LogicalClock] = None,
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
        page_size: int = DEFAULT_PAGE_SIZE,
        test_mode: bool = False,
    ):
        """
        Create a wallet ledger.

        Args:
            clock: Shared logical clock (a fresh one starting at 1970-01-01 by default)
            lock_timeout: Seconds to wait for a user's lock before raising Busy
            page_size: Default page size for list_transactions()
            test_mode: Enable set_balance() for simulating a corrupted store
        """
        self.clock = clock or LogicalClock()
        self.lock_timeout = lock_timeout
        self.page_size = page_size
        self._test_mode = test_mode
        self._accounts: Dict[str, _Account] = {}
        self._registry_lock = threading.Lock()

    # ========================================================================
    # ACCOUNTS AND LOCKING
    # ========================================================================

    def _account(self, user_id: str, create: bool = False) -> _Account:
        account = self._accounts.get(user_id)
        if account is not None:
            return account
        if not create:
            raise NotFound(f"No wallet for user {user_id}")
        if not user_id or not user_id.strip():
            raise ValueError("user_id cannot be empty")
        with self._registry_lock:
            account = self._accounts.get(user_id)
            if account is None:
                account = _Account(wallet=Wallet(user_id=user_id, created_at=self.clock.now))
                self._accounts[user_id] = account
                logger.info("Opened wallet for user %s", user_id)
        return account

    @contextmanager
    def lock(self, user_id: str, timeout: Optional[float] = None) -> Iterator[_Account]:
        """
        Hold a user's lock for the duration of the block.

        The wallet is created on first use. The lock is not reentrant: code
        inside the block must use the underscore helpers, not apply_entry().

        Raises:
            Busy: If the lock is not acquired within the timeout.
        """
        account = self._account(user_id, create=True)
        wait = self.lock_timeout if timeout is None else timeout
        if not account.lock.acquire(timeout=wait):
            logger.warning("Lock for user %s not acquired within %.2fs", user_id, wait)
            raise Busy(f"User {user_id} is busy, try again")
        try:
            yield account
        finally:
            account.lock.release()

    # ========================================================================
    # LOCKED PRIMITIVES (caller holds the user's lock)
    # ========================================================================

    def _ensure_consistent(self, account: _Account) -> None:
        """
        Refuse to write against a log that disagrees with the wallet.

        Raises:
            LedgerIntegrityError: If the user is frozen or the tail of the log
                                  does not match the wallet balance.
        """
        if account.frozen_reason is not None:
            raise LedgerIntegrityError(
                f"User {account.user_id} is frozen pending reconciliation: {account.frozen_reason}"
            )
        if account.tail_balance != account.wallet.balance:
            reason = (
                f"wallet balance {account.wallet.balance} != last balance_after "
                f"{account.tail_balance}"
            )
            account.frozen_reason = reason
            logger.critical("Ledger integrity violation for user %s: %s", account.user_id, reason)
            raise LedgerIntegrityError(f"User {account.user_id}: {reason}")

    @staticmethod
    def _check_sign(tx_type: TransactionType, amount: Decimal) -> None:
        if tx_type in CREDIT_TYPES and amount <= 0:
            raise ValueError(f"{tx_type.value} must be a positive amount, got {amount}")
        if tx_type in DEBIT_TYPES and amount >= 0:
            raise ValueError(f"{tx_type.value} must be a negative amount, got {amount}")

    def _project(self, account: _Account, entries) -> List[Decimal]:
        """
        Compute balance_after for a sequence of (type, signed_amount) entries
        without applying them.

        Raises:
            InsufficientBalance: If any debit would take the balance below zero.
        """
        balance = account.wallet.balance
        balances = []
        for tx_type, amount in entries:
            self._check_sign(tx_type, amount)
            new_balance = balance + amount
            # Only debits are checked; a credit never fails for a low balance.
            if new_balance < 0 and amount < 0:
                raise InsufficientBalance(
                    f"User {account.user_id}: {tx_type.value} of {-amount} exceeds balance {balance}"
                )
            balance = new_balance
            balances.append(balance)
        return balances

    def _post(
        self,
        account: _Account,
        tx_type: TransactionType,
        amount: Decimal,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> Transaction:
        """Append one entry and move the wallet balance. Validates like _project()."""
        (new_balance,) = self._project(account, [(tx_type, amount)])
        sequence = len(account.transactions) + 1
        magnitude = amount if tx_type == TransactionType.ADJUSTMENT else abs(amount)
        tx = Transaction(
            id=f"tx:{account.user_id}:{sequence:08d}",
            user_id=account.user_id,
            type=tx_type,
            amount=magnitude,
            balance_after=new_balance,
            created_at=self.clock.now,
            sequence=sequence,
            metadata=copy.deepcopy(dict(metadata or {})),
        )
        account.transactions.append(tx)
        total_earned = account.wallet.total_earned
        if tx_type == TransactionType.PAYOUT:
            total_earned += magnitude
        account.wallet = replace(account.wallet, balance=new_balance, total_earned=total_earned)
        logger.debug("Posted %r", tx)
        return tx

    def _replace_wallet(self, account: _Account, **changes) -> Wallet:
        """Update non-ledger wallet fields (pending_balance). balance is not allowed here."""
        if 'balance' in changes:
            raise ValueError("balance changes must go through a transaction")
        account.wallet = replace(account.wallet, **changes)
        return account.wallet

    # ========================================================================
    # MUTATIONS
    # ========================================================================

    def apply_entry(
        self,
        user_id: str,
        tx_type: TransactionType,
        signed_amount,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> Transaction:
        """
        Apply one ledger entry atomically under the user's lock.

        Args:
            user_id: Wallet owner
            tx_type: Entry type; fixes the required sign of the amount
            signed_amount: Balance effect (positive credits, negative debits)
            metadata: Free-form details stored with the entry

        Returns:
            The appended Transaction

        Raises:
            InsufficientBalance: If a debit exceeds the balance
            LedgerIntegrityError: If the user's log is inconsistent or frozen
            Busy: If the user's lock is not acquired in time
            ValueError: If the sign does not match the type
        """
        amount = to_money(signed_amount)
        with self.lock(user_id) as account:
            self._ensure_consistent(account)
            return self._post(account, tx_type, amount, metadata)

    def reconcile(self, user_id: str) -> Wallet:
        """
        Rebuild a user's wallet from the log and lift the freeze.

        The log is the authority: balance becomes the last balance_after and
        total_earned the sum of PAYOUT amounts.

        Raises:
            LedgerIntegrityError: If the log itself breaks the running-balance chain
        """
        with self.lock(user_id) as account:
            report = self._verify(account, check_wallet=False)
            if not report['valid']:
                raise LedgerIntegrityError(
                    f"User {user_id}: log is inconsistent, manual repair needed: "
                    f"{report['discrepancies']}"
                )
            earned = sum(
                (t.amount for t in account.transactions if t.type == TransactionType.PAYOUT),
                ZERO,
            )
            account.wallet = replace(account.wallet, balance=account.tail_balance, total_earned=earned)
            if account.frozen_reason is not None:
                logger.warning("Reconciled user %s (was: %s)", user_id, account.frozen_reason)
            account.frozen_reason = None
            return account.wallet

    def set_balance(self, user_id: str, balance) -> None:
        """
        Overwrite a wallet balance without a ledger entry.

        WARNING: This breaks the ledger invariant on purpose and is only
        available in test mode. The next mutation for the user will detect the
        mismatch and freeze the user.

        Raises:
            StakeLedgerError: If called when test_mode is False
        """
        if not self._test_mode:
            raise StakeLedgerError(
                "set_balance() is disabled in production mode. "
                "Use apply_entry() to modify balances. "
                "Set test_mode=True when creating WalletLedger for testing."
            )
        with self.lock(user_id) as account:
            account.wallet = replace(account.wallet, balance=to_money(balance))

    # ========================================================================
    # QUERIES
    # ========================================================================

    def has_wallet(self, user_id: str) -> bool:
        return user_id in self._accounts

    def users(self) -> List[str]:
        """All user IDs with a wallet, sorted."""
        return sorted(self._accounts)

    def get_wallet(self, user_id: str) -> Wallet:
        """
        Raises:
            NotFound: If the user has never interacted with the ledger
        """
        return self._account(user_id).wallet

    def get_balance(self, user_id: str) -> Decimal:
        """Current balance; ZERO for users without a wallet."""
        account = self._accounts.get(user_id)
        return account.wallet.balance if account else ZERO

    def is_frozen(self, user_id: str) -> bool:
        account = self._accounts.get(user_id)
        return bool(account and account.frozen_reason is not None)

    def transactions(self, user_id: str) -> List[Transaction]:
        """A user's full log in commit order (oldest first)."""
        account = self._accounts.get(user_id)
        return list(account.transactions) if account else []

    def list_transactions(
        self,
        user_id: str,
        page: int = 1,
        page_size: Optional[int] = None,
    ) -> List[Transaction]:
        """
        One page of a user's transactions, most recent first.

        Args:
            user_id: Wallet owner
            page: 1-based page number
            page_size: Entries per page (defaults to the ledger's page_size)

        Returns:
            Up to page_size transactions; empty past the last page.
        """
        if page < 1:
            raise ValueError(f"page must be >= 1, got {page}")
        size = page_size or self.page_size
        if size < 1:
            raise ValueError(f"page_size must be >= 1, got {size}")
        log = self.transactions(user_id)
        log.reverse()
        start = (page - 1) * size
        return log[start:start + size]

    def verify_ledger(self, user_id: str) -> Dict[str, Any]:
        """
        Check the ledger invariant for one user.

        Returns:
            Dict with keys:
            - 'valid': bool - True if the running-balance chain holds and the
              last balance_after equals the wallet balance
            - 'balance': Decimal - Current wallet balance
            - 'discrepancies': List[Dict] - One entry per broken link, with
              sequence, expected, actual (and 'error' for the wallet check)

        Example:
            report = wallets.verify_ledger("alice")
            assert report['valid'], report['discrepancies']
        """
        account = self._accounts.get(user_id)
        if account is None:
            return {'valid': True, 'balance': ZERO, 'discrepancies': []}
        return self._verify(account, check_wallet=True)

    @staticmethod
    def _verify(account: _Account, check_wallet: bool) -> Dict[str, Any]:
        discrepancies = []
        running = ZERO
        for expected_seq, tx in enumerate(account.transactions, start=1):
            if tx.sequence != expected_seq:
                discrepancies.append({
                    'sequence': tx.sequence,
                    'expected': expected_seq,
                    'actual': tx.sequence,
                    'error': 'sequence gap',
                })
            running = running + signed_amount(tx.type, tx.amount)
            if tx.balance_after != running:
                discrepancies.append({
                    'sequence': tx.sequence,
                    'expected': running,
                    'actual': tx.balance_after,
                })
                running = tx.balance_after
        if check_wallet and account.wallet.balance != running:
            discrepancies.append({
                'sequence': None,
                'expected': running,
                'actual': account.wallet.balance,
                'error': 'wallet balance does not match log',
            })
        return {
            'valid': not discrepancies,
            'balance': account.wallet.balance,
            'discrepancies': discrepancies,
        }
