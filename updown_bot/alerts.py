from __future__ import annotations

import json
import sqlite3
import sys
import traceback
from datetime import datetime, timezone
from urllib import request
from urllib.error import URLError

from . import db
from .config import Settings


def _post_alert(settings: Settings, payload: dict) -> None:
    if not settings.alert_webhook_url:
        return
    body = json.dumps(payload, default=str).encode("utf-8")
    req = request.Request(
        settings.alert_webhook_url,
        data=body,
        headers={"Content-Type": "application/json"},
        method="POST",
    )
    with request.urlopen(req, timeout=5) as resp:
        _ = resp.read()


def report_error(conn: sqlite3.Connection | None, settings: Settings, exc: BaseException | str, **context) -> None:
    """Print, persist and forward an error. Never raises."""
    message = str(exc)
    stack = None
    if isinstance(exc, BaseException) and exc.__traceback__ is not None:
        stack = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    ctx = " ".join(f"{k}={v}" for k, v in sorted(context.items()))
    print(f"error {ctx} message={message}", file=sys.stderr)

    if conn is not None:
        try:
            db.log_error(conn, message, context or None, stack)
        except sqlite3.Error as db_exc:
            print(f"error_log_write_failed: {db_exc}", file=sys.stderr)

    try:
        _post_alert(
            settings,
            {
                "bot": settings.bot_name,
                "message": message,
                "context": context,
                "at": datetime.now(timezone.utc).isoformat(),
            },
        )
    except (URLError, OSError, ValueError) as hook_exc:
        print(f"alert_webhook_error: {hook_exc}", file=sys.stderr)
