import hashlib

import html as html_mod

import json

import random

import time

from datetime import datetime, timezone


import requests

from google.auth.transport.requests import Request as GoogleAuthRequest

from google.oauth2 import service_account

from dispatch_log import to_utc_iso
from reminder_tiers import (
    ReminderTier,
    format_time_remaining,
    urgency_level,
)


RESEND_EMAILS_URL = "https://api.resend.com/emails"

FCM_SCOPE = "https://www.googleapis.com/auth/firebase.messaging"

REQUEST_TIMEOUT_SECONDS = 30

HTTP_RETRY_DELAYS_SECONDS = (1, 3, 8)

URGENCY_LABELS = {
    "critical": "CRITICAL",
    "high": "URGENT",
    "medium": "Important",
    "low": "Scheduled",
}


def _is_retryable_http_status(status_code: int) -> bool:
    return status_code in (408, 425, 429, 500, 502, 503, 504)


def _retry_delay(attempt: int) -> float:
    base_delay = HTTP_RETRY_DELAYS_SECONDS[attempt]
    return base_delay + random.uniform(0, base_delay * 0.25)


def _post_json_with_retries(
    url: str,
    *,
    headers: dict[str, str],
    payload: dict,
    idempotency_key: str | None = None,
    timeout: float = REQUEST_TIMEOUT_SECONDS,
) -> requests.Response:
    request_headers = dict(headers)
    if idempotency_key:
        request_headers["Idempotency-Key"] = idempotency_key

    attempts = len(HTTP_RETRY_DELAYS_SECONDS) + 1
    for attempt in range(attempts):
        try:
            response = requests.post(
                url,
                headers=request_headers,
                json=payload,
                timeout=timeout,
            )
        except requests.RequestException as exc:
            if attempt < len(HTTP_RETRY_DELAYS_SECONDS):
                delay = _retry_delay(attempt)
                print(
                    f"HTTP request failed ({exc}); retrying in {delay:.1f}s "
                    f"[{attempt + 1}/{attempts}]"
                )
                time.sleep(delay)
                continue
            raise

        if (
            _is_retryable_http_status(response.status_code)
            and attempt < len(HTTP_RETRY_DELAYS_SECONDS)
        ):
            delay = _retry_delay(attempt)
            print(
                f"HTTP {response.status_code} retry in {delay:.1f}s "
                f"[{attempt + 1}/{attempts}]"
            )
            time.sleep(delay)
            continue

        return response

    raise RuntimeError("Unreachable retry state")


def send_email(
    api_key: str,
    from_email: str,
    to_email: str,
    subject: str,
    text: str,
    html: str,
    *,
    idempotency_key: str | None = None,
    timeout: float = REQUEST_TIMEOUT_SECONDS,
) -> None:
    response = _post_json_with_retries(
        RESEND_EMAILS_URL,
        headers={
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        },
        payload={
            "from": from_email,
            "to": [to_email],
            "subject": subject,
            "text": text,
            "html": html,
        },
        idempotency_key=idempotency_key,
        timeout=timeout,
    )
    if response.status_code >= 400:
        raise RuntimeError(f"Resend error: {response.status_code} {response.text}")


def reminder_idempotency_key(switch_id: str, deadline: datetime, tier: ReminderTier) -> str:
    return f"reminder-{switch_id}-{to_utc_iso(deadline)}-{tier.value}"


def reminder_collapse_id(switch_id: str, deadline: datetime, tier: ReminderTier) -> str:
    """Push collapse id for a reminder; APNs caps it at 64 bytes."""
    key = reminder_idempotency_key(switch_id, deadline, tier)
    return hashlib.sha256(key.encode("utf-8")).hexdigest()[:32]


def build_check_in_url(site_url: str) -> str:
    return f"{site_url.rstrip('/')}/dashboard"


def build_reminder_email(
    title: str,
    tier: ReminderTier,
    deadline: datetime,
    now: datetime,
    check_in_url: str,
) -> tuple[str, str, str]:
    """Return (subject, text, html) for a check-in reminder."""
    urgency = urgency_level(tier)
    label = URGENCY_LABELS[urgency]
    time_left = format_time_remaining(tier, deadline - now)
    deadline_text = deadline.astimezone(timezone.utc).strftime("%b %d, %Y at %I:%M %p UTC")
    safe_title = title or "Untitled secret"

    subject = f"{label}: Check-in required within {time_left} - {safe_title}"

    urgent = urgency in ("critical", "high")
    text_lines = [
        "Hi,",
        "",
        f"This is a {label.lower()} reminder that you need to check in for your secret "
        f"\"{safe_title}\" within {time_left}.",
        f"Your check-in is due on {deadline_text}.",
    ]
    if urgent:
        text_lines += [
            "",
            "Time is running out! Please check in immediately to prevent automatic disclosure.",
        ]
    text_lines += [
        "",
        f"Check in: {check_in_url}",
        "",
        "If you don't check in on time, your secret will be disclosed to your "
        "designated contacts as scheduled.",
    ]
    text = "\n".join(text_lines)

    escaped_title = html_mod.escape(safe_title)
    escaped_url = html_mod.escape(check_in_url)
    urgent_html = (
        "<p><strong>Time is running out!</strong> "
        "Please check in immediately to prevent automatic disclosure.</p>"
        if urgent
        else ""
    )
    html = (
        "<p>Hi,</p>"
        f"<p>This is a {label.lower()} reminder that you need to check in for your secret "
        f"<strong>{escaped_title}</strong> within <strong>{time_left}</strong>.</p>"
        f"<p>Your check-in is due on <strong>{deadline_text}</strong>.</p>"
        f"{urgent_html}"
        f"<p><a href=\"{escaped_url}\" style=\"font-size:16px\">Check In Now</a></p>"
        "<p style='color:#888;font-size:12px'>If you don't check in on time, your secret "
        "will be disclosed to your designated contacts as scheduled.</p>"
    )
    return subject, text, html


def get_fcm_access_token(service_account_info: dict) -> str:
    credentials = service_account.Credentials.from_service_account_info(
        service_account_info,
        scopes=[FCM_SCOPE],
    )
    credentials.refresh(GoogleAuthRequest())
    if not credentials.token:
        raise RuntimeError("Unable to mint FCM access token")
    return credentials.token


def send_push_v1(
    project_id: str,
    access_token: str,
    fcm_token: str,
    title: str,
    body: str,
    data: dict[str, str] | None = None,
    *,
    collapse_id: str | None = None,
    timeout: float = REQUEST_TIMEOUT_SECONDS,
) -> requests.Response:
    url = f"https://fcm.googleapis.com/v1/projects/{project_id}/messages:send"
    payload: dict = {
        "message": {
            "token": fcm_token,
            "notification": {"title": title, "body": body},
        }
    }
    if data:
        payload["message"]["data"] = data
    if collapse_id:
        # Repeat sends with the same id replace the earlier notification on the device.
        payload["message"]["android"] = {
            "collapse_key": collapse_id,
            "notification": {"tag": collapse_id},
        }
        payload["message"]["apns"] = {"headers": {"apns-collapse-id": collapse_id}}
    return _post_json_with_retries(
        url,
        headers={
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
        },
        payload=payload,
        timeout=timeout,
    )


def build_fcm_context(firebase_sa_json: str) -> dict | None:
    """Parse Firebase SA JSON and mint an access token once per heartbeat run."""
    if not firebase_sa_json:
        return None
    try:
        sa_info = json.loads(firebase_sa_json)
    except Exception as exc:  # noqa: BLE001
        print(f"Invalid FIREBASE_SERVICE_ACCOUNT_JSON: {exc}")
        return None
    project_id = sa_info.get("project_id")
    if not project_id:
        print("FIREBASE_SERVICE_ACCOUNT_JSON missing project_id")
        return None
    try:
        access_token = get_fcm_access_token(sa_info)
    except Exception as exc:  # noqa: BLE001
        print(f"Failed to mint FCM access token: {exc}")
        return None
    return {
        "project_id": project_id,
        "access_token": access_token,
        "service_account_info": sa_info,
    }


def refresh_fcm_access_token(fcm_ctx: dict) -> bool:
    sa_info = fcm_ctx.get("service_account_info")
    if not isinstance(sa_info, dict):
        return False
    try:
        fcm_ctx["access_token"] = get_fcm_access_token(sa_info)
        return True
    except Exception as exc:  # noqa: BLE001
        print(f"Failed to refresh FCM access token: {exc}")
        return False


def _is_invalid_fcm_token_response(response_text: str) -> bool:
    lowered = response_text.lower()
    return (
        "unregistered" in lowered
        or "registration-token-not-registered" in lowered
        or "invalid registration token" in lowered
        or "requested entity was not found" in lowered
    )


class DeliveryError(RuntimeError):
    """Every channel that was tried for a reminder failed."""


class ReminderNotifier:
    """Delivers check-in reminders by email and, when configured, push.

    ``notify`` returns True when at least one channel accepted the message
    and False when the secret has no reachable channel. When channels were
    tried and all failed it raises DeliveryError carrying their errors, so
    the caller can log the attempt, leave the tier unrecorded and retry on
    the next run.
    """

    def __init__(
        self,
        client,
        *,
        resend_key: str,
        from_email: str,
        site_url: str,
        fcm_ctx: dict | None = None,
        timeout: float = REQUEST_TIMEOUT_SECONDS,
    ) -> None:
        self._client = client
        self._resend_key = resend_key
        self._from_email = from_email
        self._check_in_url = build_check_in_url(site_url)
        self._fcm_ctx = fcm_ctx
        self._timeout = timeout

    def notify(self, switch, tier: ReminderTier, *, now: datetime | None = None) -> bool:
        now = now or datetime.now(timezone.utc)
        errors = []
        email_sent = False
        try:
            email_sent = self._send_email(switch, tier, now)
        except (RuntimeError, requests.RequestException) as exc:
            print(f"Secret {switch.id}: {tier.value} email failed: {exc}")
            errors.append(f"email: {exc}")
        push_sent = False
        try:
            push_sent = self._send_push(switch, tier, now)
        except Exception as exc:  # noqa: BLE001
            print(f"Secret {switch.id}: {tier.value} push failed: {exc}")
            errors.append(f"push: {exc}")
        if email_sent or push_sent:
            return True
        if errors:
            raise DeliveryError("; ".join(errors))
        return False

    def _send_email(self, switch, tier: ReminderTier, now: datetime) -> bool:
        if not switch.contact_email:
            print(f"Secret {switch.id}: no contact email, {tier.value} email skipped")
            return False
        subject, text, html = build_reminder_email(
            switch.title,
            tier,
            switch.deadline,
            now,
            self._check_in_url,
        )
        send_email(
            self._resend_key,
            self._from_email,
            switch.contact_email,
            subject,
            text,
            html,
            idempotency_key=reminder_idempotency_key(switch.id, switch.deadline, tier),
            timeout=self._timeout,
        )
        return True

    def _send_push(self, switch, tier: ReminderTier, now: datetime) -> bool:
        if self._fcm_ctx is None or not switch.user_id:
            return False
        time_left = format_time_remaining(tier, switch.deadline - now)
        title = switch.title or "your secret"
        return self._send_push_to_user(
            switch.user_id,
            title="Check-in reminder",
            body=f"{time_left} left to check in for \"{title}\" before it is disclosed.",
            data={"type": "reminder", "secret_id": str(switch.id), "tier": tier.value},
            collapse_id=reminder_collapse_id(switch.id, switch.deadline, tier),
        )

    def _send_push_to_user(
        self,
        user_id: str,
        title: str,
        body: str,
        data: dict[str, str] | None = None,
        collapse_id: str | None = None,
    ) -> bool:
        """Send a push notification to all devices for a user.

        Returns True if at least one push was successfully delivered.
        """
        fcm_ctx = self._fcm_ctx
        tokens_response = (
            self._client.table("push_devices")
            .select("fcm_token")
            .eq("user_id", user_id)
            .execute()
        )
        rows = tokens_response.data or []
        tokens = list(
            dict.fromkeys(
                str(row.get("fcm_token")).strip()
                for row in rows
                if row.get("fcm_token")
            )
        )
        if not tokens:
            return False

        sent = False
        for token in tokens:
            try:
                response = send_push_v1(
                    fcm_ctx["project_id"],
                    fcm_ctx["access_token"],
                    token,
                    title,
                    body,
                    data,
                    collapse_id=collapse_id,
                    timeout=self._timeout,
                )
                if response.status_code in (401, 403) and refresh_fcm_access_token(fcm_ctx):
                    response = send_push_v1(
                        fcm_ctx["project_id"],
                        fcm_ctx["access_token"],
                        token,
                        title,
                        body,
                        data,
                        collapse_id=collapse_id,
                        timeout=self._timeout,
                    )
            except requests.RequestException as exc:
                print(f"Push request failed for user {user_id}: {exc}")
                continue

            if response.status_code >= 400:
                text = response.text or ""
                if _is_invalid_fcm_token_response(text):
                    self._client.table("push_devices").delete().eq("fcm_token", token).execute()
                    continue
                print(f"Push failed for user {user_id}: {response.status_code} {text}")
                continue
            sent = True
        return sent
