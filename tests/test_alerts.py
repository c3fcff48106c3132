from dataclasses import replace
from urllib.error import URLError

from updown_bot import alerts, db
from updown_bot.config import load_settings


def test_report_error_persists_context(tmp_path, capsys) -> None:
    conn = db.connect_db(tmp_path / "bot.db")
    db.init_db(conn)
    settings = replace(load_settings(), bot_root=tmp_path, alert_webhook_url="")

    try:
        raise RuntimeError("order rejected")
    except RuntimeError as exc:
        alerts.report_error(conn, settings, exc, bot="B2", asset="ETH", venue="kalshi", stage="order")

    rows = db.recent_errors(conn)
    assert rows[0]["message"] == "order rejected"
    assert rows[0]["context"] == {"asset": "ETH", "bot": "B2", "stage": "order", "venue": "kalshi"}
    assert "RuntimeError" in rows[0]["stack"]
    assert "stage=order" in capsys.readouterr().err
    conn.close()


def test_webhook_failure_is_printed_not_raised(tmp_path, monkeypatch, capsys) -> None:
    settings = replace(load_settings(), bot_root=tmp_path, alert_webhook_url="http://127.0.0.1:9/hook")

    def boom(req, timeout=None):
        raise URLError("connection refused")

    monkeypatch.setattr(alerts.request, "urlopen", boom)
    alerts.report_error(None, settings, "spot feed down", stage="price")
    assert "alert_webhook_error" in capsys.readouterr().err
