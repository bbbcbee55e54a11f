"""Violation tracking and ban escalation."""

import math
from collections import deque
from dataclasses import dataclass
from typing import Dict, List, Optional, Set

from asdf_gateway.app.middleware.rate_limit.models import BanPolicy, BanStatus, ViolationRecord

SECONDS_PER_HOUR = 60 * 60


@dataclass
class ViolationOutcome:
    """What a single recorded violation triggered."""
    record: ViolationRecord
    temp_banned: bool = False
    perma_banned: bool = False


class ViolationTracker:
    """Counts violations per identifier and escalates to bans.

    Temporary bans start at ``policy.threshold`` violations. Counting keeps
    going during a temp ban; at ``policy.perma_threshold`` the identifier
    moves to the permanent ban set, which only ``remove_ban`` clears.
    """

    def __init__(self, policy: Optional[BanPolicy] = None):
        self.policy = policy or BanPolicy()
        self._records: Dict[str, ViolationRecord] = {}
        self._permanent: Set[str] = set()

    def __len__(self) -> int:
        return len(self._records)

    def get(self, identifier: str) -> Optional[ViolationRecord]:
        return self._records.get(identifier)

    def is_permanently_banned(self, identifier: str) -> bool:
        return identifier in self._permanent

    @property
    def permanent_bans(self) -> List[str]:
        return list(self._permanent)

    @property
    def records(self) -> Dict[str, ViolationRecord]:
        return dict(self._records)

    def record(self, identifier: str, now: float) -> ViolationOutcome:
        record = self._records.get(identifier)
        if record is None:
            record = ViolationRecord(history=deque(maxlen=self.policy.history_size))
            self._records[identifier] = record

        record.count += 1
        record.last_violation = now
        record.history.append(now)
        outcome = ViolationOutcome(record=record)

        # An expired temp ban can be re-applied
        if record.count >= self.policy.threshold and not record.is_temp_banned(now):
            record.banned = True
            record.ban_expires = now + self.policy.temp_duration
            outcome.temp_banned = True

        if record.count >= self.policy.perma_threshold and identifier not in self._permanent:
            self._permanent.add(identifier)
            outcome.perma_banned = True

        return outcome

    def status(self, identifier: str, now: float) -> BanStatus:
        if identifier in self._permanent:
            return BanStatus(banned=True, permanent=True, expires_in=-1)

        record = self._records.get(identifier)
        if record is not None and record.is_temp_banned(now):
            return BanStatus(banned=True, expires_in=record.ban_expires - now)

        return BanStatus(banned=False)

    def clear(self, identifier: str) -> bool:
        return self._records.pop(identifier, None) is not None

    def remove_ban(self, identifier: str) -> bool:
        """Lift a permanent ban and drop the violation record.

        Returns:
            True if a permanent ban was lifted
        """
        was_banned = identifier in self._permanent
        self._permanent.discard(identifier)
        self._records.pop(identifier, None)
        return was_banned

    def decay(self, now: float) -> int:
        """Apply hourly decay, clear expired temp bans and drop empty records.

        Decay is measured from the later of the last violation and the last
        applied decay, so repeated sweeps never decay the same hour twice.

        Returns:
            Number of records removed
        """
        rate = self.policy.decay_per_hour
        removed = 0

        for identifier, record in list(self._records.items()):
            if rate > 0:
                anchor = max(record.last_violation, record.decayed_at)
                decay = math.floor((now - anchor) / SECONDS_PER_HOUR * rate)
                if decay > 0:
                    record.count = max(0, record.count - decay)
                    record.decayed_at = anchor + decay / rate * SECONDS_PER_HOUR

            if record.banned and now >= record.ban_expires:
                record.banned = False

            if record.count == 0 and not record.banned:
                del self._records[identifier]
                removed += 1

        return removed
