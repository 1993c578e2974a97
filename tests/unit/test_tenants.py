import pytest

from app.core.exceptions import ConflictError, NotFoundError
from app.modules.tenants.service import TenantService
from tests.conftest import wait_for


@pytest.fixture
def tenants(engine, db):
    return TenantService(db, engine.workspaces)


def test_create_tenant_creates_default_workspace_and_links_owner(tenants, db, cluster):
    user = db.seed("users", {"email": "owner@example.com"})
    tenant = tenants.create_tenant("Globex Corp", user["id"])
    assert tenant.slug == "globex-corp"
    assert tenant.status == "active"

    workspaces = db.rows("workspaces")
    assert [(w["slug"], w["namespace"]) for w in workspaces] == [("default", "globex-corp-default")]
    owner = db.rows("users")[0]
    assert owner["tenant_id"] == tenant.id
    assert owner["active_workspace_id"] == workspaces[0]["id"]


def test_tenant_slug_must_be_unique(tenants, db, tenant):
    user = db.seed("users", {"email": "owner@example.com"})
    with pytest.raises(ConflictError):
        tenants.create_tenant("ACME", user["id"])


def test_deprovision_deletes_every_workspace(tenants, engine, db, helm, tenant, workspace, other_workspace):
    engine.install(tenant["id"], workspace["id"], "cache")
    engine.install(tenant["id"], other_workspace["id"], "cache")
    wait_for(engine)

    result = tenants.deprovision_tenant(tenant["id"])
    assert result["message"] == "Tenant 'Acme' deprovisioned"
    assert {w["status"] for w in db.rows("workspaces")} == {"deleted"}
    assert db.rows("deployments") == []
    assert len([c for c in helm.calls if c["op"] == "uninstall"]) == 2

    with pytest.raises(NotFoundError):
        tenants.get_tenant(tenant["id"])
