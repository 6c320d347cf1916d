import os

import re

import sys

import time

from dataclasses import dataclass

from datetime import datetime, timedelta, timezone


from supabase import ClientOptions, create_client

from dispatch_log import DeliveryFailureLog, DispatchLog
from evaluator import DEFAULT_MAX_WORKERS, Outcome, PassSummary, Switch, run_pass
from notifier import REQUEST_TIMEOUT_SECONDS, ReminderNotifier, build_fcm_context


SECRET_BATCH_SIZE = 200

SECRET_SELECT_FIELDS = "id,user_id,title,status,check_in_days,next_check_in"

FRACTION_PATTERN = re.compile(r"\.(\d+)")


@dataclass(frozen=True)
class Settings:

    supabase_url: str

    supabase_key: str

    resend_key: str

    from_email: str

    site_url: str

    firebase_sa_json: str = ""

    max_workers: int = DEFAULT_MAX_WORKERS

    request_timeout: float = REQUEST_TIMEOUT_SECONDS


def get_env(name: str, default: str | None = None) -> str:
    value = os.getenv(name, default)
    if value is None or value == "":
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


def _env_number(name: str, default, cast):
    raw = os.getenv(name, "")
    if raw == "":
        return default
    try:
        return cast(raw)
    except ValueError as exc:
        raise RuntimeError(f"Invalid value for {name}: {raw!r}") from exc


def load_settings() -> Settings:
    return Settings(
        supabase_url=get_env("SUPABASE_URL"),
        supabase_key=get_env("SUPABASE_SERVICE_ROLE_KEY"),
        resend_key=get_env("RESEND_API_KEY"),
        from_email=get_env("RESEND_FROM_EMAIL"),
        site_url=get_env("SITE_URL"),
        firebase_sa_json=os.getenv("FIREBASE_SERVICE_ACCOUNT_JSON", ""),
        max_workers=_env_number("REMINDER_MAX_WORKERS", DEFAULT_MAX_WORKERS, int),
        request_timeout=_env_number("REQUEST_TIMEOUT_SECONDS", REQUEST_TIMEOUT_SECONDS, float),
    )


def parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    if value.endswith("Z"):
        value = value.replace("Z", "+00:00")
    # Postgres trims trailing zeros from fractional seconds.
    value = FRACTION_PATTERN.sub(
        lambda match: "." + match.group(1)[:6].ljust(6, "0"), value, count=1
    )
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def iter_active_secrets(client, page_size: int = SECRET_BATCH_SIZE):
    """Yield active secrets with a pending check-in, keyset-paginated on `id`.

    Check-ins happening while the job runs move `next_check_in` but never
    the ordering key, so no rows are skipped or repeated between pages.
    """
    last_seen_id: str | None = None
    while True:
        query = (
            client.table("secrets")
            .select(SECRET_SELECT_FIELDS)
            .eq("status", "active")
            .not_.is_("next_check_in", "null")
            .order("id")
            .limit(page_size)
        )
        if last_seen_id is not None:
            query = query.gt("id", last_seen_id)
        response = query.execute()
        batch = response.data or []
        if not batch:
            break
        yield batch
        last_seen_id = str(batch[-1]["id"])


def fetch_contact_emails(client, user_ids: list[str]) -> dict[str, str]:
    if not user_ids:
        return {}
    response = (
        client.table("user_contact_methods")
        .select("user_id,email")
        .in_("user_id", user_ids)
        .execute()
    )
    emails: dict[str, str] = {}
    for row in response.data or []:
        email = (row.get("email") or "").strip()
        if email:
            emails.setdefault(str(row["user_id"]), email)
    return emails


def switch_from_row(row: dict, contact_email: str | None = None) -> Switch:
    """Build a Switch from a `secrets` row. Raises ValueError if malformed."""
    secret_id = row.get("id")
    if not secret_id:
        raise ValueError("Secret row has no id")
    deadline = parse_iso(row.get("next_check_in"))
    if deadline is None:
        raise ValueError(f"Secret {secret_id} has no next_check_in")
    try:
        check_in_days = int(row.get("check_in_days"))
    except (TypeError, ValueError) as exc:
        raise ValueError(
            f"Secret {secret_id} has invalid check_in_days: {row.get('check_in_days')!r}"
        ) from exc
    user_id = row.get("user_id")
    return Switch(
        id=str(secret_id),
        deadline=deadline,
        interval=timedelta(days=check_in_days),
        title=row.get("title") or "",
        user_id=str(user_id) if user_id else None,
        contact_email=contact_email,
    )


def build_switches(rows: list[dict], contacts: dict[str, str], summary: PassSummary) -> list[Switch]:
    switches: list[Switch] = []
    for row in rows:
        try:
            switches.append(
                switch_from_row(row, contacts.get(str(row.get("user_id"))))
            )
        except ValueError as exc:
            print(f"Skipping secret {row.get('id', '?')}: {exc}")
            summary.add(Outcome.INVALID)
    return switches


def main() -> int:
    settings = load_settings()

    client = create_client(
        settings.supabase_url,
        settings.supabase_key,
        options=ClientOptions(postgrest_client_timeout=settings.request_timeout),
    )

    # Single reading of the clock for the whole run.
    now = datetime.now(timezone.utc)

    dispatch_log = DispatchLog(client)
    failure_log = DeliveryFailureLog(client)
    notifier = ReminderNotifier(
        client,
        resend_key=settings.resend_key,
        from_email=settings.from_email,
        site_url=settings.site_url,
        fcm_ctx=build_fcm_context(settings.firebase_sa_json),
        timeout=settings.request_timeout,
    )

    summary = PassSummary()
    for batch in iter_active_secrets(client):
        user_ids = list(dict.fromkeys(str(row["user_id"]) for row in batch if row.get("user_id")))
        contacts = fetch_contact_emails(client, user_ids)
        switches = build_switches(batch, contacts, summary)
        run_pass(
            switches,
            now,
            dispatch_log,
            notifier,
            max_workers=settings.max_workers,
            summary=summary,
            failure_log=failure_log,
        )

    print(f"Reminder heartbeat: {summary.describe()}")

    if summary.has_failures:
        print(
            "Reminder heartbeat finished with errors: "
            f"{summary.counts[Outcome.NOTIFY_FAILED]} failed deliveries, "
            f"{summary.counts[Outcome.STORE_UNAVAILABLE]} store failures, "
            f"{summary.counts[Outcome.ERROR]} unexpected errors"
        )
        return 1
    return 0


def is_transient_error_message(message: str) -> bool:
    lowered = message.lower()
    return any(
        token in lowered
        for token in (
            "500",
            "502",
            "503",
            "504",
            "429",
            "connectionerror",
            "timeout",
            "temporar",
            "network",
        )
    )


if __name__ == "__main__":
    _RETRY_DELAYS = [15, 45]
    for _attempt in range(3):
        try:
            sys.exit(main())
        except Exception as exc:  # noqa: BLE001
            _err = str(exc)
            if is_transient_error_message(_err) and _attempt < 2:
                print(f"Transient error (attempt {_attempt + 1}/3), retrying in {_RETRY_DELAYS[_attempt]}s: {exc}")
                time.sleep(_RETRY_DELAYS[_attempt])
            else:
                print(f"Reminder heartbeat failed: {exc}")
                sys.exit(1)
