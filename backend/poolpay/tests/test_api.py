"""
Tests for the admin HTTP endpoints.
"""
from datetime import date, datetime, timedelta
from decimal import Decimal

from poolpay.core.config import settings
from poolpay.core.utils import now_local
from poolpay.models import DailyPayout, ExchangeRate, User
from poolpay.tests.helpers import ACCOUNT, COIN, WINDOW_START


def _market_rate(db):
    db.add(ExchangeRate(symbol="X/XMR", rate=Decimal("0.002"), source="MARKET", fetched_at=now_local()))
    db.commit()


def test_root_and_health(client):
    assert client.get("/").json() == {"message": "PoolPay API is running"}
    assert client.get("/health").json() == {"status": "healthy"}


def test_run_window_and_inspect(client, db, scenario):
    _market_rate(db)
    payload = {"account": ACCOUNT, "coin": COIN, "window_start": WINDOW_START.isoformat()}

    response = client.post("/api/settlements/windows/run", json=payload)
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "SUCCESS"
    assert body["user_count"] == 2

    assert client.post("/api/settlements/windows/run", json=payload).json()["status"] == "DUPLICATE"

    windows = client.get("/api/settlements/windows", params={"account": ACCOUNT}).json()
    assert len(windows) == 1
    assert Decimal(windows[0]["total_reference_amount"]) == Decimal("0.01")
    assert windows[0]["allocation_source"] == "POOL"

    detail = client.get(f"/api/settlements/windows/{body['window_id']}")
    assert detail.status_code == 200
    assert detail.json()["status"] == "SUCCESS"


def test_window_errors(client, db, scenario):
    _market_rate(db)
    assert client.get("/api/settlements/windows/999").status_code == 404
    assert client.post("/api/settlements/windows/999/redrive").status_code == 404

    payload = {"account": ACCOUNT, "coin": COIN, "window_start": WINDOW_START.isoformat()}
    window_id = client.post("/api/settlements/windows/run", json=payload).json()["window_id"]
    assert client.post(f"/api/settlements/windows/{window_id}/redrive").status_code == 409

    bad = dict(payload, window_end=(WINDOW_START - timedelta(hours=1)).isoformat())
    assert client.post("/api/settlements/windows/run", json=bad).status_code == 400


def test_reviewed_reject_then_approve_is_refused(client, db, users, seed):
    _market_rate(db)
    db.add(DailyPayout(account=ACCOUNT, coin=COIN, payout_date=date(2024, 5, 1), gross_amount=Decimal("1")))
    db.commit()
    seed.binding("w1", 2)
    seed.samples("w1", "1", start=datetime(2024, 5, 1, 0, 0))

    built = client.post("/api/reviewed-settlements/build", json={"account": ACCOUNT, "coin": COIN})
    assert built.status_code == 200
    settlement = built.json()
    assert settlement["status"] == "AUDIT"
    assert [item["status"] for item in settlement["items"]] == ["PENDING"]

    url = f"/api/reviewed-settlements/{settlement['id']}/audit"
    assert client.post(url, json={"action": "HOLD"}).status_code == 400
    rejected = client.post(url, json={"action": "REJECT", "remark": "bad data"})
    assert rejected.status_code == 200
    assert rejected.json()["status"] == "REJECTED"
    assert client.post(url, json={"action": "APPROVE"}).status_code == 409

    db.expire_all()
    assert db.query(User).filter(User.id == 2).first().credit_balance == 0
    listed = client.get("/api/reviewed-settlements", params={"status": "REJECTED"}).json()
    assert [s["id"] for s in listed] == [settlement["id"]]


def test_build_without_pending_payout_conflicts(client, db):
    response = client.post("/api/reviewed-settlements/build", json={"account": ACCOUNT, "coin": COIN})
    assert response.status_code == 409
    assert client.get("/api/reviewed-settlements/42").status_code == 404


def test_rate_endpoints(client, db):
    created = client.post("/api/fx-rates", json={"symbol": "x/xmr", "rate": "0.002"})
    assert created.status_code == 201
    assert created.json()["symbol"] == "X/XMR"

    snapshot = client.get("/api/fx-rates/snapshot", params={"coin": "X"}).json()
    assert Decimal(snapshot["coin_to_credit"]) == Decimal("2")
    assert snapshot["provenance"] == "X/XMR->CAL"

    assert client.get("/api/fx-rates/snapshot", params={"coin": "NOPE"}).status_code == 404
    assert client.get("/api/fx-rates/latest", params={"symbol": "NOPE/XMR"}).status_code == 404
    assert client.post("/api/fx-rates", json={"symbol": "XMR", "rate": "1"}).status_code == 400


def test_refresh_requires_rate_api(client, db, monkeypatch):
    monkeypatch.setattr(settings, "RATE_API_URL", "")
    assert client.post("/api/fx-rates/refresh").status_code == 503


def test_admin_token_is_enforced_when_configured(client, db, monkeypatch):
    monkeypatch.setattr(settings, "ADMIN_API_TOKEN", "secret")
    assert client.get("/api/settlements/windows").status_code == 401
    assert client.get("/api/settlements/windows", headers={"X-Admin-Token": "wrong"}).status_code == 401
    assert client.get("/api/settlements/windows", headers={"X-Admin-Token": "secret"}).status_code == 200
    assert client.get("/api/settlements/alerts", headers={"X-Admin-Token": "secret"}).json() == []
