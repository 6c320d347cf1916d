from collections import Counter

from concurrent.futures import ThreadPoolExecutor

from dataclasses import dataclass, field

from datetime import datetime, timedelta

from enum import Enum

from typing import Iterable


from dispatch_log import DispatchLogError
from reminder_tiers import classify, scheduled_for


DEFAULT_MAX_WORKERS = 8


@dataclass(frozen=True)
class Switch:
    """Read-only view of an active secret as seen by the reminder job."""

    id: str
    deadline: datetime
    interval: timedelta
    title: str = ""
    user_id: str | None = None
    contact_email: str | None = None


class Outcome(str, Enum):
    NOT_DUE = "not_due"
    ALREADY_SENT = "already_sent"
    SENT = "sent"
    RACE_LOST = "race_lost"
    NOTIFY_FAILED = "notify_failed"
    STORE_UNAVAILABLE = "store_unavailable"
    INVALID = "invalid"
    ERROR = "error"


# Outcomes that mean the run should be reported as failed.
FAILURE_OUTCOMES = frozenset(
    {Outcome.NOTIFY_FAILED, Outcome.STORE_UNAVAILABLE, Outcome.ERROR}
)


@dataclass
class PassSummary:
    counts: Counter = field(default_factory=Counter)

    def add(self, outcome: Outcome) -> None:
        self.counts[outcome] += 1

    @property
    def total(self) -> int:
        return sum(self.counts.values())

    @property
    def has_failures(self) -> bool:
        return any(self.counts[outcome] for outcome in FAILURE_OUTCOMES)

    def describe(self) -> str:
        parts = [f"{outcome.value}={self.counts[outcome]}" for outcome in Outcome if self.counts[outcome]]
        return f"{self.total} secrets evaluated" + (f" ({', '.join(parts)})" if parts else "")


def evaluate_switch(
    switch: Switch,
    now: datetime,
    dispatch_log,
    notifier,
    failure_log=None,
) -> Outcome:
    try:
        tier = classify(now, switch.deadline, switch.interval)
    except ValueError as exc:
        print(f"Secret {switch.id}: invalid check-in configuration: {exc}")
        return Outcome.INVALID

    if tier is None:
        return Outcome.NOT_DUE

    try:
        if dispatch_log.has_dispatched(switch.id, switch.deadline, tier):
            return Outcome.ALREADY_SENT
    except DispatchLogError as exc:
        print(f"Secret {switch.id}: dispatch log unavailable, {tier.value} reminder deferred: {exc}")
        return Outcome.STORE_UNAVAILABLE

    try:
        delivered = notifier.notify(switch, tier, now=now)
    except Exception as exc:  # noqa: BLE001
        print(f"Secret {switch.id}: {tier.value} reminder failed: {exc}")
        _record_failure(failure_log, switch, tier, str(exc), now)
        return Outcome.NOTIFY_FAILED
    if not delivered:
        print(f"Secret {switch.id}: {tier.value} reminder not delivered, will retry next run")
        _record_failure(failure_log, switch, tier, "no delivery channel available", now)
        return Outcome.NOTIFY_FAILED

    try:
        recorded = dispatch_log.record_dispatch(
            switch.id,
            switch.deadline,
            tier,
            scheduled_for=scheduled_for(tier, switch.deadline, switch.interval),
            dispatched_at=now,
        )
    except DispatchLogError as exc:
        print(f"Secret {switch.id}: {tier.value} reminder sent but not recorded: {exc}")
        return Outcome.STORE_UNAVAILABLE

    if not recorded:
        # A concurrent run recorded this reminder first.
        print(f"Secret {switch.id}: {tier.value} reminder already recorded by another run")
        return Outcome.RACE_LOST

    print(f"Secret {switch.id}: {tier.value} reminder sent")
    return Outcome.SENT


def _record_failure(failure_log, switch: Switch, tier, error: str, now: datetime) -> None:
    if failure_log is None:
        return
    try:
        attempts = failure_log.record_failure(
            switch.id, switch.deadline, tier, error, attempted_at=now
        )
    except DispatchLogError as exc:
        print(f"Secret {switch.id}: could not log failed {tier.value} reminder: {exc}")
        return
    print(f"Secret {switch.id}: {tier.value} reminder has failed {attempts} time(s)")


def _evaluate_isolated(
    switch: Switch, now: datetime, dispatch_log, notifier, failure_log=None
) -> Outcome:
    try:
        return evaluate_switch(switch, now, dispatch_log, notifier, failure_log)
    except Exception as exc:  # noqa: BLE001
        print(f"Processing failed for secret {getattr(switch, 'id', '?')}: {exc}")
        return Outcome.ERROR


def run_pass(
    switches: Iterable[Switch],
    now: datetime,
    dispatch_log,
    notifier,
    *,
    max_workers: int = DEFAULT_MAX_WORKERS,
    summary: PassSummary | None = None,
    failure_log=None,
) -> PassSummary:
    """Evaluate every switch against a single ``now`` reading.

    Switches are independent; they are evaluated on a bounded thread pool
    and one switch failing never stops the others. Failed deliveries are
    written to ``failure_log`` when one is given.
    """
    summary = summary if summary is not None else PassSummary()
    with ThreadPoolExecutor(max_workers=max(1, max_workers)) as pool:
        outcomes = pool.map(
            lambda switch: _evaluate_isolated(switch, now, dispatch_log, notifier, failure_log),
            switches,
        )
        for outcome in outcomes:
            summary.add(outcome)
    return summary
