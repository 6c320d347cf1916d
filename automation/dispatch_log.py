from datetime import datetime, timezone

from postgrest.exceptions import APIError

from reminder_tiers import ReminderTier


DISPATCH_TABLE = "reminder_dispatches"

UNIQUE_VIOLATION_CODE = "23505"


class DispatchLogError(RuntimeError):
    """The dispatch log could not be read or written."""


def to_utc_iso(value: datetime) -> str:
    """Canonical text form of a timestamp used in dispatch keys."""
    if value.tzinfo is None:
        raise ValueError(f"Timestamp must be timezone-aware, got naive {value!r}")
    return value.astimezone(timezone.utc).isoformat()


def _is_unique_violation(exc: APIError) -> bool:
    if str(getattr(exc, "code", "") or "") == UNIQUE_VIOLATION_CODE:
        return True
    message = str(getattr(exc, "message", "") or exc).lower()
    return "duplicate key value" in message


class DispatchLog:
    """Append-only record of reminder tiers already sent for a deadline.

    Rows are keyed by (secret_id, deadline, tier) and the table carries a
    unique constraint on that key. ``record_dispatch`` relies on that
    constraint to pick a single winner when overlapping heartbeat runs
    try to record the same reminder; nothing is cached in process.
    """

    def __init__(self, client, *, table: str = DISPATCH_TABLE) -> None:
        self._client = client
        self._table = table

    def has_dispatched(
        self,
        switch_id: str,
        deadline: datetime,
        tier: ReminderTier,
    ) -> bool:
        deadline_key = to_utc_iso(deadline)
        try:
            response = (
                self._client.table(self._table)
                .select("id")
                .eq("secret_id", switch_id)
                .eq("deadline", deadline_key)
                .eq("tier", tier.value)
                .limit(1)
                .execute()
            )
        except Exception as exc:  # noqa: BLE001
            raise DispatchLogError(
                f"Failed to read dispatch log for secret {switch_id} ({tier.value}): {exc}"
            ) from exc
        return bool(response.data)

    def record_dispatch(
        self,
        switch_id: str,
        deadline: datetime,
        tier: ReminderTier,
        *,
        scheduled_for: datetime | None = None,
        dispatched_at: datetime | None = None,
    ) -> bool:
        """Insert the dispatch record for this key.

        Returns True if this call created the record and False if it
        already existed. Any other failure raises DispatchLogError.
        """
        row = {
            "secret_id": switch_id,
            "deadline": to_utc_iso(deadline),
            "tier": tier.value,
            "dispatched_at": to_utc_iso(dispatched_at or datetime.now(timezone.utc)),
        }
        if scheduled_for is not None:
            row["scheduled_for"] = to_utc_iso(scheduled_for)

        try:
            response = self._client.table(self._table).insert(row).execute()
        except APIError as exc:
            if _is_unique_violation(exc):
                return False
            raise DispatchLogError(
                f"Failed to record dispatch for secret {switch_id} ({tier.value}): {exc}"
            ) from exc
        except Exception as exc:  # noqa: BLE001
            raise DispatchLogError(
                f"Failed to record dispatch for secret {switch_id} ({tier.value}): {exc}"
            ) from exc

        if not response.data:
            raise DispatchLogError(
                f"Dispatch insert for secret {switch_id} ({tier.value}) returned no row"
            )
        return True


FAILURE_TABLE = "reminder_delivery_failures"

ADMIN_NOTIFICATIONS_TABLE = "admin_notifications"

# Initial attempt plus four retries.
MAX_DELIVERY_ATTEMPTS = 5

MAX_ERROR_LENGTH = 1000


class DeliveryFailureLog:
    """Failed reminder deliveries, one row per (secret_id, deadline, tier).

    Each failed attempt bumps ``attempt_count`` and keeps the latest error.
    When a reminder reaches MAX_DELIVERY_ATTEMPTS an admin notification is
    written once so the outage does not stay silent.
    """

    def __init__(
        self,
        client,
        *,
        table: str = FAILURE_TABLE,
        admin_table: str = ADMIN_NOTIFICATIONS_TABLE,
        max_attempts: int = MAX_DELIVERY_ATTEMPTS,
    ) -> None:
        self._client = client
        self._table = table
        self._admin_table = admin_table
        self.max_attempts = max_attempts

    def record_failure(
        self,
        switch_id: str,
        deadline: datetime,
        tier: ReminderTier,
        error: str,
        *,
        attempted_at: datetime | None = None,
    ) -> int:
        """Store a failed delivery attempt and return the attempt count so far."""
        deadline_key = to_utc_iso(deadline)
        attempted = to_utc_iso(attempted_at or datetime.now(timezone.utc))
        message = (error or "unknown error")[:MAX_ERROR_LENGTH]

        try:
            attempts = self._bump_attempts(switch_id, deadline_key, tier, message, attempted)
        except Exception as exc:  # noqa: BLE001
            raise DispatchLogError(
                f"Failed to record delivery failure for secret {switch_id} ({tier.value}): {exc}"
            ) from exc

        if attempts == self.max_attempts:
            self._notify_admin(switch_id, deadline_key, tier, message, attempts)
        return attempts

    def _bump_attempts(
        self,
        switch_id: str,
        deadline_key: str,
        tier: ReminderTier,
        message: str,
        attempted: str,
    ) -> int:
        existing = (
            self._client.table(self._table)
            .select("attempt_count")
            .eq("secret_id", switch_id)
            .eq("deadline", deadline_key)
            .eq("tier", tier.value)
            .limit(1)
            .execute()
        )
        rows = existing.data or []
        if rows:
            attempts = int(rows[0].get("attempt_count") or 0) + 1
            (
                self._client.table(self._table)
                .update(
                    {
                        "attempt_count": attempts,
                        "last_error": message,
                        "last_attempt_at": attempted,
                    }
                )
                .eq("secret_id", switch_id)
                .eq("deadline", deadline_key)
                .eq("tier", tier.value)
                .execute()
            )
            return attempts

        try:
            self._client.table(self._table).insert(
                {
                    "secret_id": switch_id,
                    "deadline": deadline_key,
                    "tier": tier.value,
                    "attempt_count": 1,
                    "last_error": message,
                    "first_attempt_at": attempted,
                    "last_attempt_at": attempted,
                }
            ).execute()
        except APIError as exc:
            # Another run logged the first failure for this key at the same time.
            if not _is_unique_violation(exc):
                raise
        return 1

    def _notify_admin(
        self,
        switch_id: str,
        deadline_key: str,
        tier: ReminderTier,
        message: str,
        attempts: int,
    ) -> None:
        print(
            f"ALERT secret {switch_id}: {tier.value} reminder failed {attempts} times, "
            f"last error: {message}"
        )
        try:
            self._client.table(self._admin_table).insert(
                {
                    "type": "max_retries_reached",
                    "severity": "error",
                    "title": "Maximum Retries Reached for Reminder",
                    "message": (
                        f"Reminder {tier.value} for secret {switch_id} has failed after "
                        f"{attempts} attempts. Last error: {message}"
                    ),
                    "metadata": {
                        "secret_id": switch_id,
                        "deadline": deadline_key,
                        "tier": tier.value,
                        "retry_count": attempts,
                        "last_error": message,
                    },
                }
            ).execute()
        except Exception as exc:  # noqa: BLE001
            print(f"Failed to write admin notification for secret {switch_id}: {exc}")
