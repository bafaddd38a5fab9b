import pytest

from ally.infra import jwt as jwt_helper


@pytest.mark.asyncio
async def test_health_live(api_client):
	response = await api_client.get("/health/live")
	assert response.status_code == 200
	assert response.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_health_ready_reports_checks(api_client):
	response = await api_client.get("/health/ready")
	assert response.status_code == 200
	body = response.json()
	assert body["checks"]["redis"]["ok"] is True
	assert body["checks"]["postgres"]["skipped"] is True


@pytest.mark.asyncio
async def test_metrics_exposition(api_client):
	response = await api_client.get("/metrics")
	assert response.status_code == 200
	assert "ally_presence_online_identities" in response.text


@pytest.mark.asyncio
async def test_metrics_require_admin_token_when_private(api_client, monkeypatch):
	from ally.settings import settings

	monkeypatch.setattr(settings, "obs_metrics_public", False)
	monkeypatch.setattr(settings, "obs_admin_token", "s3cret")

	assert (await api_client.get("/metrics")).status_code == 403
	ok = await api_client.get("/metrics", headers={"X-Admin-Token": "s3cret"})
	assert ok.status_code == 200


@pytest.mark.asyncio
async def test_presence_endpoint_requires_token(api_client):
	response = await api_client.get("/realtime/presence/alice")
	assert response.status_code == 401


@pytest.mark.asyncio
async def test_presence_endpoint_reports_offline_user(api_client):
	token = jwt_helper.encode_access({"sub": "bob"})
	response = await api_client.get("/realtime/presence/alice", headers={"Authorization": f"Bearer {token}"})
	assert response.status_code == 200
	assert response.json() == {"userId": "alice", "online": False, "status": "offline"}
