"""
rules.py - Payout tier resolution

Maps a stake amount to the payout rule that prices it:
1. PayoutRuleResolver.resolve() - Pure lookup of the active rule covering an amount
2. validate_rule_set() - Reports overlapping tiers and coverage gaps
3. project_stake() - Recovery days and total return for a priced stake
4. default_payout_rules() - The standard four-tier rule set

The resolver holds an immutable, sorted tuple of active rules. It never
mutates anything after construction, so it can be shared across threads.
Administrative rule changes build a new resolver.
"""

from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal, ROUND_CEILING
import logging
from typing import Iterable, List, Optional, Tuple

from .core import (
    PayoutRule, ConfigurationConflict,
    DEFAULT_DURATION_DAYS, MONEY_QUANTUM, MONEY_ROUNDING,
    to_money,
)

logger = logging.getLogger(__name__)


# ============================================================================
# RULE SET VALIDATION
# ============================================================================

@dataclass(frozen=True, slots=True)
class RuleSetIssue:
    """
    A problem found in a rule set.

    kind is "overlap" or "gap". For overlaps, rule_ids names both rules.
    For gaps, low/high bound the uncovered amounts.
    """
    kind: str
    rule_ids: Tuple[str, ...]
    low: Decimal
    high: Decimal

    def __str__(self) -> str:
        if self.kind == "overlap":
            return f"rules {' and '.join(self.rule_ids)} overlap on [{self.low}, {self.high}]"
        return f"no active rule covers ({self.low}, {self.high})"


def _sort_key(rule: PayoutRule):
    return (rule.min_amount, rule.id)


def validate_rule_set(
    rules: Iterable[PayoutRule],
    supported_min: Optional[Decimal] = None,
    supported_max: Optional[Decimal] = None,
    strict: bool = False,
    step: Decimal = Decimal("1"),
) -> List[RuleSetIssue]:
    """
    Check active rules for overlaps and coverage gaps.

    Rules are compared in ascending min_amount order. Tiers are written in
    whole currency units, so [500, 999] and [1000, 4999] are contiguous: a
    gap is reported only when the next rule starts more than `step` after
    the covered range ends.

    Args:
        rules: Rules to check (inactive rules are ignored)
        supported_min: If given, report a gap when the lowest rule starts above it
        supported_max: If given, report a gap when the highest rule ends below it
        strict: Raise ConfigurationConflict on the first overlap instead of returning it
        step: Smallest amount increment between adjacent tiers

    Returns:
        List of issues, overlaps first then gaps, in rule order.
    """
    active = sorted((r for r in rules if r.is_active), key=_sort_key)
    overlaps: List[RuleSetIssue] = []
    gaps: List[RuleSetIssue] = []

    for i, rule in enumerate(active):
        for other in active[i + 1:]:
            if other.min_amount > rule.max_amount:
                break
            issue = RuleSetIssue(
                kind="overlap",
                rule_ids=(rule.id, other.id),
                low=other.min_amount,
                high=min(rule.max_amount, other.max_amount),
            )
            if strict:
                raise ConfigurationConflict(str(issue))
            overlaps.append(issue)

    # Coverage: walk the union of ranges from low to high.
    if active:
        covered_to = active[0].max_amount
        if supported_min is not None and active[0].min_amount > supported_min:
            gaps.append(RuleSetIssue("gap", (), supported_min - step, active[0].min_amount))
        for rule in active[1:]:
            if rule.min_amount > covered_to + step:
                gaps.append(RuleSetIssue("gap", (), covered_to, rule.min_amount))
            covered_to = max(covered_to, rule.max_amount)
        if supported_max is not None and covered_to < supported_max:
            gaps.append(RuleSetIssue("gap", (), covered_to, supported_max + step))

    return overlaps + gaps


# ============================================================================
# RESOLVER
# ============================================================================

class PayoutRuleResolver:
    """
    Resolve a stake amount to its payout rule.

    If the rule set is misconfigured and several active rules contain an
    amount, the one with the lowest min_amount wins (ties by id) and a
    configuration-conflict warning is logged. The choice is deterministic.

    Example:
        resolver = PayoutRuleResolver(default_payout_rules())
        rule = resolver.resolve(Decimal("10000"))
        assert rule.daily_payout == Decimal("600")
    """

    def __init__(
        self,
        rules: Iterable[PayoutRule],
        default_duration_days: int = DEFAULT_DURATION_DAYS,
    ):
        self._rules: Tuple[PayoutRule, ...] = tuple(
            sorted((r for r in rules if r.is_active), key=_sort_key)
        )
        self.default_duration_days = default_duration_days
        for issue in validate_rule_set(self._rules):
            logger.warning("Payout rule set issue: %s", issue)

    @property
    def rules(self) -> Tuple[PayoutRule, ...]:
        """Active rules in ascending min_amount order."""
        return self._rules

    @property
    def minimum_amount(self) -> Optional[Decimal]:
        return self._rules[0].min_amount if self._rules else None

    @property
    def maximum_amount(self) -> Optional[Decimal]:
        return max(r.max_amount for r in self._rules) if self._rules else None

    def resolve(self, amount) -> Optional[PayoutRule]:
        """
        Return the active rule whose [min_amount, max_amount] contains amount.

        Returns None when no active rule covers the amount.
        """
        amount = to_money(amount)
        matches = [r for r in self._rules if r.contains(amount)]
        if not matches:
            return None
        if len(matches) > 1:
            logger.warning(
                "Configuration conflict: amount %s matches rules %s; using %s",
                amount, [r.id for r in matches], matches[0].id,
            )
        return matches[0]

    def duration_for(self, rule: PayoutRule) -> int:
        """Tenor in days for stakes priced by rule."""
        return rule.duration_days if rule.duration_days is not None else self.default_duration_days


# ============================================================================
# PROJECTIONS
# ============================================================================

@dataclass(frozen=True, slots=True)
class StakeProjection:
    """
    Expected economics of a stake at creation time.

    Attributes:
        amount: Principal
        daily_payout: Payout per day from the resolved rule
        duration_days: Number of payout days
        recovery_days: Days until cumulative payouts reach the principal
        total_payout: daily_payout * duration_days
        total_return: total_payout - amount
        return_percentage: total_return / amount * 100, two places
    """
    amount: Decimal
    daily_payout: Decimal
    duration_days: int
    recovery_days: int
    total_payout: Decimal
    total_return: Decimal
    return_percentage: Decimal


def project_stake(amount, rule: PayoutRule, duration_days: int) -> StakeProjection:
    """Compute the StakeProjection for a principal priced by rule."""
    amount = to_money(amount)
    recovery_days = int((amount / rule.daily_payout).to_integral_value(rounding=ROUND_CEILING))
    total_payout = rule.daily_payout * duration_days
    total_return = total_payout - amount
    return_percentage = (total_return / amount * 100).quantize(MONEY_QUANTUM, rounding=MONEY_ROUNDING)
    return StakeProjection(
        amount=amount,
        daily_payout=rule.daily_payout,
        duration_days=duration_days,
        recovery_days=recovery_days,
        total_payout=total_payout,
        total_return=total_return,
        return_percentage=return_percentage,
    )


# ============================================================================
# DEFAULT RULE SET
# ============================================================================

def default_payout_rules() -> List[PayoutRule]:
    """The standard tiers: 500-999 -> 30, 1000-4999 -> 70, 5000-9999 -> 300, 10000-99999 -> 600."""
    return [
        PayoutRule("tier_1", Decimal("500"), Decimal("999"), Decimal("30")),
        PayoutRule("tier_2", Decimal("1000"), Decimal("4999"), Decimal("70")),
        PayoutRule("tier_3", Decimal("5000"), Decimal("9999"), Decimal("300")),
        PayoutRule("tier_4", Decimal("10000"), Decimal("99999"), Decimal("600")),
    ]
