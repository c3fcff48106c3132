import base64
from dataclasses import replace
from datetime import datetime, timezone

import pytest
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from updown_bot.config import load_settings
from updown_bot.kalshi import KalshiClient, KalshiError, choose_strike, parse_ticker, settlement_side


def test_parse_ticker_eastern_close() -> None:
    parsed = parse_ticker("KXBTC15M-26FEB131700-97000")
    assert parsed is not None
    assert parsed.asset == "BTC"
    assert parsed.strike == 97000.0
    # 17:00 EST == 22:00 UTC.
    assert parsed.expiration == datetime(2026, 2, 13, 22, 0, tzinfo=timezone.utc)


def test_parse_ticker_rejects_garbage() -> None:
    assert parse_ticker("KXBTC15M-26FEB131700") is None
    assert parse_ticker("KXDOGE15M-26FEB131700-1") is None
    assert parse_ticker("KXBTC15M-26XXX131700-97000") is None


def test_choose_strike_falls_back_to_floor() -> None:
    assert choose_strike("BTC", "KXBTC15M-26FEB131700-97000", "96999.5") == 97000.0
    # A truncated ETH strike is outside the sane range, so floor_strike wins.
    assert choose_strike("ETH", "KXETH15M-26FEB131700-5", 2650.25) == 2650.25
    assert choose_strike("ETH", "KXETH15M-26FEB131700-5", None) is None


def test_settlement_side() -> None:
    assert settlement_side({"market_result": "yes"}) == "yes"
    assert settlement_side({"market_result": "No"}) == "no"
    assert settlement_side({"market_result": "void"}) == "void"
    assert settlement_side({"market_result": "scalar"}) == "void"
    assert settlement_side({}) is None


def test_signature_verifies_with_public_key(tmp_path) -> None:
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode()
    settings = replace(load_settings(), bot_root=tmp_path, kalshi_key_id="kid", kalshi_private_key=pem)
    client = KalshiClient(settings)

    sig = client.sign("1700000000000", "POST", "/trade-api/v2/portfolio/orders")
    key.public_key().verify(
        base64.b64decode(sig),
        b"1700000000000POST/trade-api/v2/portfolio/orders",
        padding.PSS(mgf=padding.MGF1(hashes.SHA256()), salt_length=padding.PSS.DIGEST_LENGTH),
        hashes.SHA256(),
    )


def test_signed_request_path_and_order_body(tmp_path) -> None:
    settings = replace(load_settings(), bot_root=tmp_path, kalshi_key_id="kid")
    client = KalshiClient(settings)
    client.sign = lambda ts, method, path: f"sig:{method}:{path}"  # type: ignore[method-assign]
    captured = {}

    class Resp:
        status_code = 201
        content = b"{}"
        text = ""

        def json(self):
            return {"order": {"order_id": "k-9", "status": "resting"}}

    def fake_request(method, url, params=None, json=None, headers=None, timeout=None):
        captured.update(method=method, url=url, json=json, headers=headers)
        return Resp()

    client.session.request = fake_request  # type: ignore[method-assign]
    order = client.place_order("KXBTC15M-26FEB131700-97000", "no", 2, price_cents=97)

    assert order["order_id"] == "k-9"
    assert captured["json"] == {
        "ticker": "KXBTC15M-26FEB131700-97000",
        "side": "no",
        "action": "buy",
        "count": 2,
        "type": "limit",
        "no_price": 97,
    }
    assert captured["headers"]["KALSHI-ACCESS-SIGNATURE"] == "sig:POST:/trade-api/v2/portfolio/orders"


def test_get_order_returns_none_for_unknown_order(tmp_path) -> None:
    settings = replace(load_settings(), bot_root=tmp_path, kalshi_key_id="kid")
    client = KalshiClient(settings)
    client.sign = lambda ts, method, path: "sig"  # type: ignore[method-assign]
    status = {"code": 404}

    class Resp:
        content = b"{}"
        text = "not found"

        @property
        def status_code(self):
            return status["code"]

        def json(self):
            return {}

    client.session.request = lambda *args, **kwargs: Resp()  # type: ignore[method-assign]
    assert client.get_order("k-gone") is None

    status["code"] = 500
    with pytest.raises(KalshiError) as err:
        client.get_order("k-gone")
    assert err.value.status_code == 500
