"""Downstream account selection under a per-account daily upload cap."""

import random
from typing import Dict, Iterable, List, Optional

from .counters import CounterStore
from .errors import AccountsExhaustedError
from .models import DEFAULT_DAILY_UPLOAD_LIMIT


def eligible_accounts(
    accounts: Iterable[str], counts: Dict[str, int], daily_limit: int
) -> List[str]:
    return [name for name in accounts if counts.get(name, 0) < daily_limit]


class AccountSelector:
    """Picks a random account that still has upload quota for today."""

    def __init__(
        self,
        counters: CounterStore,
        accounts: Iterable[str],
        daily_limit: int = DEFAULT_DAILY_UPLOAD_LIMIT,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.counters = counters
        self.accounts = list(accounts)
        self.daily_limit = daily_limit
        self._rng = rng or random.Random()

    def choose(self, counts: Optional[Dict[str, int]] = None) -> Optional[str]:
        """Return an eligible account, or None when every account is at its cap."""
        if counts is None:
            counts = self.counters.upload_counts()
        candidates = eligible_accounts(self.accounts, counts, self.daily_limit)
        if not candidates:
            return None
        return self._rng.choice(candidates)

    def require(self) -> str:
        account = self.choose()
        if account is None:
            raise AccountsExhaustedError(
                f"All {len(self.accounts)} accounts reached the daily limit of {self.daily_limit} uploads"
            )
        return account

    def record_success(self, account: str) -> int:
        return self.counters.increment_upload(account)
