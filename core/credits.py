"""Credit meter — cost computation and an idempotent debit against a ledger."""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass

from config.defaults import DEFAULTS, PRICING
from core.state import CreditLedgerEntry

logger = logging.getLogger(__name__)

OK = "ok"
INSUFFICIENT = "insufficient_balance"
EXEMPT = "exempt"


def compute_cost(file_count, complexity=None, pricing=None):
    """cost = ceil(file_count * base_rate * multiplier[tier]).

    Unknown tiers fall back to the default tier.
    """
    pricing = pricing or PRICING
    multipliers = pricing["multipliers"]
    tier = (complexity or "").strip().lower()
    if tier not in multipliers:
        tier = pricing["default_tier"]
    return math.ceil(file_count * pricing["base_rate"] * multipliers[tier])


@dataclass(frozen=True)
class DebitResult:
    status: str
    amount: int
    balance: int | None = None
    replayed: bool = False

    @property
    def ok(self):
        return self.status in (OK, EXEMPT)


class InMemoryLedger:
    """Append-only ledger with per-key idempotency.

    Stands in for the external ledger service: balances derive from the
    entries, and a debit or refund keyed by a run id applies at most once.
    """

    def __init__(self, starting_balance=None, balances=None):
        self._lock = threading.Lock()
        self._starting = DEFAULTS["starting_balance"] if starting_balance is None else starting_balance
        self._seed = dict(balances or {})
        self.entries: list[CreditLedgerEntry] = []
        self._applied = {}   # (reason, run_id) -> entry

    def _balance(self, user_id):
        base = self._seed.get(user_id, self._starting)
        return base + sum(e.amount for e in self.entries if e.user_id == user_id)

    def balance(self, user_id):
        with self._lock:
            return self._balance(user_id)

    def debit(self, user_id, amount, run_id):
        with self._lock:
            previous = self._applied.get(("debit", run_id))
            if previous is not None:
                return DebitResult(OK, -previous.amount, self._balance(user_id), replayed=True)
            current = self._balance(user_id)
            if amount > current:
                return DebitResult(INSUFFICIENT, amount, current)
            entry = CreditLedgerEntry(user_id=user_id, amount=-amount, reason="debit", run_id=run_id)
            self.entries.append(entry)
            self._applied[("debit", run_id)] = entry
            return DebitResult(OK, amount, current - amount)

    def refund(self, user_id, run_id):
        """Return a run's debit. No-op without a debit, or when already refunded."""
        with self._lock:
            debit = self._applied.get(("debit", run_id))
            if debit is None or ("refund", run_id) in self._applied:
                return 0
            entry = CreditLedgerEntry(user_id=user_id, amount=-debit.amount, reason="refund", run_id=run_id)
            self.entries.append(entry)
            self._applied[("refund", run_id)] = entry
            return entry.amount


class CreditMeter:
    """Affordability check and debit, with privileged identities exempt."""

    def __init__(self, ledger, privileged_ids=None, pricing=None):
        self.ledger = ledger
        self.privileged_ids = set(privileged_ids or ())
        self.pricing = pricing or PRICING

    def is_privileged(self, user_id):
        return user_id in self.privileged_ids

    def cost(self, file_count, complexity=None):
        return compute_cost(file_count, complexity, self.pricing)

    def balance(self, user_id):
        return self.ledger.balance(user_id)

    def can_afford(self, user_id, amount):
        if self.is_privileged(user_id):
            return True
        return self.ledger.balance(user_id) >= amount

    def debit(self, user_id, amount, run_id):
        if self.is_privileged(user_id):
            return DebitResult(EXEMPT, 0)
        result = self.ledger.debit(user_id, amount, run_id)
        if result.ok:
            logger.info("Debited %d credits from %s for run %s%s",
                        amount, user_id, run_id, " (replay)" if result.replayed else "")
        else:
            logger.warning("Debit of %d refused for %s (balance %s)", amount, user_id, result.balance)
        return result

    def refund(self, user_id, run_id):
        if self.is_privileged(user_id):
            return 0
        refunded = self.ledger.refund(user_id, run_id)
        if refunded:
            logger.info("Refunded %d credits to %s for run %s", refunded, user_id, run_id)
        return refunded
