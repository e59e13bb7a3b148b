"""
API tests for the cancellation endpoints: caller identity, envelopes and
end-to-end flows over HTTP
"""
import httpx
import pytest

from auth_utils import create_expired_jwt, create_jwt
from config import settings
from database import get_db
from database_models import Cancellation
from main import app
from tests.conftest import TestAsyncSessionLocal


# Override get_db dependency to use test database
async def override_get_db():
    """Override get_db to use test database"""
    async with TestAsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


@pytest.fixture
async def async_client(test_db):
    """
    Async HTTP client against the app, with the test database wired in.
    Tables come from the test_db fixture.
    """
    app.dependency_overrides[get_db] = override_get_db
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


def _auth(user_id):
    return {"Authorization": f"Bearer {create_jwt(user_id)}"}


async def _add_cancellation(db, user_id, variant, subscription=None):
    cancellation = Cancellation(
        user_id=user_id,
        subscription_id=subscription.id if subscription is not None else None,
        downsell_variant=variant,
    )
    db.add(cancellation)
    await db.commit()
    return cancellation.id


@pytest.mark.asyncio
async def test_ping(async_client):
    response = await async_client.get("/ping")
    assert response.status_code == 200
    assert response.json() == "pong"


@pytest.mark.asyncio
async def test_assign_returns_variant(async_client, make_account):
    await make_account("u1")

    first = await async_client.post("/api/cancellations/assign", json={"user_id": "u1"}, headers=_auth("u1"))
    second = await async_client.post("/api/cancellations/assign", json={"user_id": "u1"}, headers=_auth("u1"))

    body = first.json()
    assert first.status_code == 200
    assert body["ok"] is True
    assert body["error"] is None
    assert body["data"]["downsell_variant"] in ("A", "B")
    assert second.json()["data"] == body["data"]

    subscription = await async_client.get("/api/subscriptions/latest", params={"user_id": "u1"}, headers=_auth("u1"))
    assert subscription.json()["data"]["status"] == "pending_cancellation"


@pytest.mark.asyncio
async def test_assign_with_cookie_token(async_client):
    headers = {"Cookie": f"auth_token={create_jwt('u1')}"}
    response = await async_client.post("/api/cancellations/assign", json={"user_id": "u1"}, headers=headers)
    assert response.status_code == 200


@pytest.mark.asyncio
async def test_assign_for_another_user_is_forbidden(async_client):
    response = await async_client.post("/api/cancellations/assign", json={"user_id": "u1"}, headers=_auth("u2"))

    assert response.status_code == 403
    body = response.json()
    assert body["ok"] is False
    assert body["error"] == "permission_denied"
    assert body["data"] == {}


@pytest.mark.asyncio
async def test_missing_token_rejected_outside_demo_mode(async_client):
    response = await async_client.post("/api/cancellations/assign", json={"user_id": "u1"})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_missing_token_allowed_in_demo_mode(async_client, monkeypatch):
    monkeypatch.setattr(settings, "allow_anonymous_demo", True)
    response = await async_client.post("/api/cancellations/assign", json={"user_id": "u1"})
    assert response.status_code == 200


@pytest.mark.asyncio
async def test_expired_token_never_falls_back_to_anonymous(async_client, monkeypatch):
    monkeypatch.setattr(settings, "allow_anonymous_demo", True)
    headers = {"Authorization": f"Bearer {create_expired_jwt('u1')}"}
    response = await async_client.post("/api/cancellations/assign", json={"user_id": "u1"}, headers=headers)
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_draft_patch_saves_only_sent_fields(async_client, make_account, test_db):
    _, subscription = await make_account("u1")
    cancellation_id = await _add_cancellation(test_db, "u1", "A", subscription)

    response = await async_client.patch(
        f"/api/cancellations/{cancellation_id}/draft",
        json={"applied_count": "1-5", "unexpected": "ignored"},
        headers=_auth("u1"),
    )
    assert response.status_code == 200
    assert response.json()["data"]["saved"] == {"applied_count": "1-5"}

    record = (await async_client.get(f"/api/cancellations/{cancellation_id}", headers=_auth("u1"))).json()["data"]
    assert record["applied_count"] == "1-5"
    assert record["emailed_count"] is None


@pytest.mark.asyncio
async def test_draft_patch_invalid_bucket(async_client, make_account, test_db):
    _, subscription = await make_account("u1")
    cancellation_id = await _add_cancellation(test_db, "u1", "A", subscription)

    response = await async_client.patch(
        f"/api/cancellations/{cancellation_id}/draft",
        json={"interview_count": "100"},
        headers=_auth("u1"),
    )

    assert response.status_code == 422
    body = response.json()
    assert body["error"] == "validation_failed"
    assert body["data"]["fields"] == ["interview_count"]


@pytest.mark.asyncio
async def test_unknown_cancellation_is_not_found(async_client):
    response = await async_client.get("/api/cancellations/does-not-exist", headers=_auth("u1"))
    assert response.status_code == 404
    assert response.json()["error"] == "not_found"


@pytest.mark.asyncio
async def test_accept_downsell_variant_a_conflicts(async_client, make_account, test_db):
    _, subscription = await make_account("u1")
    cancellation_id = await _add_cancellation(test_db, "u1", "A", subscription)

    response = await async_client.post(f"/api/cancellations/{cancellation_id}/accept-downsell", headers=_auth("u1"))

    assert response.status_code == 409
    assert response.json()["error"] == "invalid_transition"


@pytest.mark.asyncio
async def test_accept_downsell_returns_discounted_price(async_client, make_account, test_db):
    _, subscription = await make_account("u1", monthly_price=2900)
    cancellation_id = await _add_cancellation(test_db, "u1", "B", subscription)

    response = await async_client.post(f"/api/cancellations/{cancellation_id}/accept-downsell", headers=_auth("u1"))

    assert response.status_code == 200
    assert response.json()["data"]["discounted_price"] == 1900


@pytest.mark.asyncio
async def test_finalize_still_looking_over_http(async_client, make_account):
    await make_account("u1")
    assigned = await async_client.post("/api/cancellations/assign", json={"user_id": "u1"}, headers=_auth("u1"))
    cancellation_id = assigned.json()["data"]["cancellation_id"]

    response = await async_client.post(
        f"/api/cancellations/{cancellation_id}/finalize/still-looking",
        json={"reason": "Too expensive; willing to pay $15"},
        headers=_auth("u1"),
    )

    assert response.status_code == 200
    assert response.json()["data"]["reason"] == "Too expensive; willing to pay $15"
    subscription = await async_client.get("/api/subscriptions/latest", params={"user_id": "u1"}, headers=_auth("u1"))
    assert subscription.json()["data"]["status"] == "cancelled"

    latest = await async_client.get("/api/cancellations/latest", params={"user_id": "u1"}, headers=_auth("u1"))
    assert latest.json()["data"]["finalized"] is True


@pytest.mark.asyncio
async def test_finalize_found_job_body_validation(async_client, make_account, test_db):
    _, subscription = await make_account("u1")
    cancellation_id = await _add_cancellation(test_db, "u1", "A", subscription)

    response = await async_client.post(
        f"/api/cancellations/{cancellation_id}/finalize/found-job",
        json={"visa_type": "H-1B"},
        headers=_auth("u1"),
    )

    assert response.status_code == 422
    body = response.json()
    assert body["error"] == "validation_failed"
    assert "has_lawyer" in body["data"]["fields"]


@pytest.mark.asyncio
async def test_latest_without_records_returns_empty_data(async_client):
    response = await async_client.get("/api/cancellations/latest", params={"user_id": "u1"}, headers=_auth("u1"))
    assert response.status_code == 200
    assert response.json()["data"] == {}


@pytest.mark.asyncio
async def test_experiment_split(async_client, test_db):
    await _add_cancellation(test_db, "x", "A")
    await _add_cancellation(test_db, "y", "B")
    await _add_cancellation(test_db, "z", "B")

    response = await async_client.get("/api/cancellations/experiment/split", headers=_auth("u1"))
    assert response.json()["data"] == {"A": 1, "B": 2}


@pytest.mark.asyncio
async def test_experiment_split_requires_identity(async_client):
    response = await async_client.get("/api/cancellations/experiment/split")
    assert response.status_code == 401
