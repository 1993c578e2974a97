import pytest
from httpx import ASGITransport, AsyncClient

from app.core.dependencies import get_engine
from app.database.supabase_client import get_supabase
from app.main import app
from app.modules.auth.service import clear_auth_cache
from tests.conftest import KV_RECIPE, wait_for
from tests.fakes import PodShell

TOKEN = "token-alice"
AUTH = {"Authorization": f"Bearer {TOKEN}"}


@pytest.fixture
def user(db, tenant, workspace):
    row = db.seed("users", {
        "email": "alice@example.com",
        "tenant_id": tenant["id"],
        "active_workspace_id": workspace["id"],
    })
    db.users[TOKEN] = {"id": row["id"], "email": row["email"]}
    return row


@pytest.fixture
async def client(db, engine, user):
    clear_auth_cache()
    app.dependency_overrides[get_supabase] = lambda: db
    app.dependency_overrides[get_engine] = lambda: engine
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
    clear_auth_cache()


async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.headers["X-Content-Type-Options"] == "nosniff"


async def test_me_returns_tenant_and_active_workspace(client, tenant, workspace):
    response = await client.get("/api/v1/auth/me", headers=AUTH)
    assert response.status_code == 200
    body = response.json()
    assert body["tenant_id"] == tenant["id"]
    assert body["active_workspace_id"] == workspace["id"]
    assert body["email"] == "alice@example.com"


async def test_requests_without_valid_token_are_rejected(client):
    assert (await client.get("/api/v1/deployments")).status_code in (401, 403)
    response = await client.get("/api/v1/deployments", headers={"Authorization": "Bearer nope"})
    assert response.status_code == 401


async def test_user_without_tenant_is_forbidden(client, db):
    row = db.seed("users", {"email": "bob@example.com"})
    db.users["token-bob"] = {"id": row["id"], "email": row["email"]}
    response = await client.get("/api/v1/deployments", headers={"Authorization": "Bearer token-bob"})
    assert response.status_code == 403


async def test_install_into_active_workspace(client, engine, workspace):
    response = await client.post("/api/v1/deployments", json={"recipe_slug": "app"}, headers=AUTH)
    assert response.status_code == 202
    body = response.json()
    assert body["status"] == "pending"
    assert len(body["dependency_ids"]) == 1
    assert body["deployment"]["workspace_id"] == workspace["id"]
    wait_for(engine)

    deployment = (await client.get(f"/api/v1/deployments/{body['deployment_id']}", headers=AUTH)).json()
    assert deployment["status"] == "running"

    listed = (await client.get(f"/api/v1/deployments?workspace_id={workspace['id']}", headers=AUTH)).json()
    assert {d["name"] for d in listed} == {"db", "app"}

    logs = (await client.get(f"/api/v1/deployments/{body['deployment_id']}/logs", headers=AUTH)).json()
    assert logs["has_more"] is False

    events = (await client.get(f"/api/v1/deployments/{body['deployment_id']}/events", headers=AUTH)).json()
    assert events[-1]["action"] == "created"
    assert events[-1]["triggered_by"] == engine.supabase.rows("users")[0]["id"]

    credentials = (await client.get(f"/api/v1/deployments/{body['deployment_id']}/credentials", headers=AUTH)).json()
    assert set(credentials["secrets"]) == {"api_key"}


async def test_invalid_config_returns_field_errors(client, db):
    response = await client.post(
        "/api/v1/deployments",
        json={"recipe_slug": "db", "config": {"max_connections": "many"}},
        headers=AUTH,
    )
    assert response.status_code == 400
    assert response.json()["detail"]["errors"][0]["field"] == "max_connections"
    assert db.rows("deployments") == []


async def test_quota_exceeded_returns_shortfalls(client, cluster):
    cluster.set_quota("acme-default", {"limits.memory": "512Mi"}, {"limits.memory": "384Mi"})
    response = await client.post("/api/v1/deployments", json={"recipe_slug": "db"}, headers=AUTH)
    assert response.status_code == 422
    assert response.json()["detail"]["shortfalls"][0]["resource"] == "memory"


async def test_unknown_recipe_returns_404(client):
    response = await client.post("/api/v1/deployments", json={"recipe_slug": "ghost"}, headers=AUTH)
    assert response.status_code == 404


async def test_upgrade_restart_and_remove(client, engine, db):
    body = (await client.post("/api/v1/deployments", json={"recipe_slug": "app"}, headers=AUTH)).json()
    wait_for(engine)
    app_id = body["deployment_id"]
    db_id = body["dependency_ids"][0]

    response = await client.put(f"/api/v1/deployments/{app_id}", json={"config": {"replicas": 3}}, headers=AUTH)
    assert response.status_code == 200
    assert response.json()["status"] == "deploying"
    wait_for(engine)

    response = await client.post(f"/api/v1/deployments/{app_id}/restart", headers=AUTH)
    assert response.status_code == 200
    wait_for(engine)

    response = await client.delete(f"/api/v1/deployments/{db_id}", headers=AUTH)
    assert response.status_code == 409

    response = await client.delete(f"/api/v1/deployments/{app_id}", headers=AUTH)
    assert response.status_code == 200
    assert response.json()["status"] == "deleting"
    wait_for(engine)
    assert (await client.get(f"/api/v1/deployments/{app_id}", headers=AUTH)).status_code == 404


async def test_workspace_lifecycle(client, db, tenant, workspace):
    response = await client.post("/api/v1/workspaces", json={"name": "Staging"}, headers=AUTH)
    assert response.status_code == 201
    staging = response.json()
    assert staging["namespace"] == "acme-staging"

    listed = (await client.get("/api/v1/workspaces", headers=AUTH)).json()
    assert [w["slug"] for w in listed] == ["default", "staging"]

    response = await client.post("/api/v1/workspaces/switch", json={"workspace_id": staging["id"]}, headers=AUTH)
    assert response.status_code == 200
    me = (await client.get("/api/v1/auth/me", headers=AUTH)).json()
    assert me["active_workspace_id"] == staging["id"]

    response = await client.delete(f"/api/v1/workspaces/{staging['id']}", headers=AUTH)
    assert response.status_code == 200
    assert response.json()["message"] == "Workspace 'Staging' is being deleted"

    me = (await client.get("/api/v1/auth/me", headers=AUTH)).json()
    assert me["active_workspace_id"] == workspace["id"]

    response = await client.delete(f"/api/v1/workspaces/{workspace['id']}", headers=AUTH)
    assert response.status_code == 409


async def test_export_and_import(client, engine, workspace, other_workspace):
    await client.post("/api/v1/deployments", json={"recipe_slug": "app"}, headers=AUTH)
    wait_for(engine)

    response = await client.get(f"/api/v1/workspaces/{workspace['id']}/export", headers=AUTH)
    assert response.status_code == 200
    snapshot = response.json()
    assert snapshot["version"] == 1
    assert snapshot["exportedBy"] == "alice@example.com"
    assert [s["name"] for s in snapshot["services"]] == ["db", "app"]

    response = await client.post(f"/api/v1/workspaces/{other_workspace['id']}/import", json=snapshot, headers=AUTH)
    assert response.status_code == 200
    result = response.json()
    assert result["totalQueued"] == 2
    wait_for(engine)

    response = await client.post(f"/api/v1/workspaces/{other_workspace['id']}/import", json=snapshot, headers=AUTH)
    assert response.json()["totalSkipped"] == 2

    snapshot["version"] = 7
    response = await client.post(f"/api/v1/workspaces/{other_workspace['id']}/import", json=snapshot, headers=AUTH)
    assert response.status_code == 400


async def test_tenant_endpoints(client, tenant):
    response = await client.get("/api/v1/tenant", headers=AUTH)
    assert response.status_code == 200
    assert response.json()["slug"] == "acme"


async def test_ready_reports_each_dependency(client, cluster):
    response = await client.get("/ready")
    assert response.status_code == 200
    assert response.json()["checks"] == {"database": "ok", "cluster": "ok"}

    cluster.unreachable = True
    response = await client.get("/ready")
    assert response.status_code == 503
    assert response.json()["checks"]["cluster"] == "unavailable"


async def test_data_export_and_import_routes(client, engine, db, cluster, tenant, workspace):
    db.seed("recipes", {"slug": "kv", "version": "1.0.0", "definition": KV_RECIPE})
    cluster.secrets[("acme-default", "kv-credentials")] = {"password": "s3cret"}
    deployment = db.seed("deployments", {
        "tenant_id": tenant["id"], "workspace_id": workspace["id"],
        "recipe_slug": "kv", "recipe_version": "1.0.0", "name": "kv",
        "namespace": "acme-default", "release_name": "kv", "config": {"db": 0},
        "secret_ref": "kv-credentials", "depends_on": [], "status": "running", "revision": 1,
    })
    shell = PodShell(export_bytes=b"snapshot")
    cluster.exec_handler = shell

    response = await client.post(f"/api/v1/deployments/{deployment['id']}/export-data", headers=AUTH)
    assert response.status_code == 200
    assert response.content == b"snapshot"
    assert response.headers["content-disposition"].startswith('attachment; filename="kv-')

    response = await client.post(
        f"/api/v1/deployments/{deployment['id']}/import-data",
        files={"file": ("dump.rdb", b"restored", "application/octet-stream")},
        headers=AUTH,
    )
    assert response.status_code == 200
    assert response.json()["restarting"] is True
    assert shell.stdin == b"restored"
    wait_for(engine)
    assert (await client.get(f"/api/v1/deployments/{deployment['id']}", headers=AUTH)).json()["revision"] == 2


async def test_logs_with_pod_tail(client, engine, cluster, workspace):
    body = (await client.post("/api/v1/deployments", json={"recipe_slug": "cache"}, headers=AUTH)).json()
    wait_for(engine)
    cluster.pod_logs["cache"] = "--- cache-0 ---\nready"

    logs = (await client.get(f"/api/v1/deployments/{body['deployment_id']}/logs?lines=20", headers=AUTH)).json()
    assert logs["pod_logs"] == "--- cache-0 ---\nready"
    assert (await client.get(f"/api/v1/deployments/{body['deployment_id']}/logs?lines=0", headers=AUTH)).status_code == 422
