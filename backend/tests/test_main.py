from settings import reset_settings


class TestHealthEndpoint:
    async def test_health_check(self, client, monkeypatch, tmp_path):
        monkeypatch.setenv("N8NCTL_PROJECT_ROOT", str(tmp_path))
        monkeypatch.setenv("N8NCTL_CONTAINER_NAME", "n8n-prod")
        reset_settings()
        try:
            resp = await client.get("/health")
        finally:
            reset_settings()
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "healthy"
        assert data["managed_unit"] == "n8n-prod"
        assert data["project_root"] == str(tmp_path)


class TestOpenApi:
    async def test_routes_mounted_under_api(self, client):
        resp = await client.get("/openapi.json")
        paths = resp.json()["paths"]
        assert "/api/deployments" in paths
        assert "/api/snapshots/{snapshot_id}/restore" in paths
