import pytest

from app.modules.deployments.engine import DeploymentEngine
from app.modules.deployments.port_forward import PortForwardSupervisor
from app.modules.deployments.workflow_runner import WorkflowRunner
from app.modules.recipes.service import RecipeService
from tests.fakes import FakeCluster, FakeHelm, FakeSpawner, FakeSupabase

DB_RECIPE = {
    "slug": "db",
    "version": "1.0.0",
    "config_schema": {
        "database": {"type": "string", "default": "app"},
        "max_connections": {"type": "integer", "default": 100, "min": 10, "max": 1000},
    },
    "secrets_schema": {"password": {"generate": True, "length": 16}},
    "resources": {"cpu": "200m", "memory": "256Mi", "storage": "1Gi"},
    "release": {
        "chart": "postgresql",
        "service_port": 5432,
        "values_template": (
            "auth:\n"
            "  database: {{ config.database }}\n"
            "  password: {{ secrets.password }}\n"
            "maxConnections: {{ config.max_connections }}\n"
        ),
    },
    "connection": {"port": "5432", "properties": {"database": "{{ config.database }}"}},
}

APP_RECIPE = {
    "slug": "app",
    "version": "2.0.0",
    "config_schema": {
        "replicas": {"type": "integer", "default": 1, "min": 1, "max": 5},
        "mode": {"type": "enum", "choices": ["light", "full"], "default": "light"},
        "cpu": {"type": "string"},
    },
    "secrets_schema": {"api_key": {"generate": True, "length": 20}},
    "dependencies": [{"recipe": "db", "default_config": {"database": "appdata"}}],
    "resources": {"cpu": "300m", "memory": "512Mi"},
    "release": {
        "chart": "app-chart",
        "service_port": 8080,
        "values_template": (
            "replicas: {{ config.replicas }}\n"
            "database:\n"
            "  host: {{ deps.db.host }}\n"
            "  name: {{ deps.db.database }}\n"
            "  password: {{ deps.db.secrets.password }}\n"
            "restartedAt: \"{{ restart_token or '' }}\"\n"
        ),
    },
}

CACHE_RECIPE = {
    "slug": "cache",
    "version": "1.0.0",
    "resources": {"cpu": "100m", "memory": "128Mi"},
    "release": {"chart": "redis", "values_template": "fullnameOverride: {{ name }}\n"},
}

KV_RECIPE = {
    "slug": "kv",
    "version": "1.0.0",
    "display_name": "KV Store",
    "config_schema": {"db": {"type": "integer", "default": 0}},
    "secrets_schema": {"password": {"generate": True, "length": 16}},
    "resources": {"cpu": "100m", "memory": "128Mi"},
    "release": {"chart": "redis", "values_template": "fullnameOverride: {{ name }}\n"},
    "data_export": {
        "description": "RDB snapshot",
        "type": "command",
        "command": "kv-cli -a {{ secrets.password }} dump --db {{ config.db }}",
        "file_extension": "rdb",
    },
    "data_import": {
        "description": "Restore an RDB snapshot",
        "type": "command",
        "command": "kv-cli -a {{ secrets.password }} restore",
    },
}

FILES_RECIPE = {
    "slug": "files",
    "version": "1.0.0",
    "resources": {"cpu": "100m", "memory": "128Mi"},
    "release": {"chart": "files", "values_template": "fullnameOverride: {{ name }}\n"},
    "data_export": {"description": "Data directory", "type": "files", "paths": ["/data"], "exclude": [".sys/tmp/*"]},
    "data_import": {"description": "Restore the data directory", "type": "files", "extract_path": "/", "restart_after_import": False},
}


@pytest.fixture
def db():
    return FakeSupabase()


@pytest.fixture
def cluster():
    return FakeCluster()


@pytest.fixture
def helm():
    return FakeHelm()


@pytest.fixture
def spawner():
    return FakeSpawner()


@pytest.fixture
def seed_recipes(db):
    for recipe in (DB_RECIPE, APP_RECIPE, CACHE_RECIPE):
        db.seed("recipes", {"slug": recipe["slug"], "version": recipe["version"], "definition": recipe})


@pytest.fixture
def tenant(db):
    return db.seed("tenants", {"slug": "acme", "name": "Acme", "status": "active"})


@pytest.fixture
def workspace(db, tenant):
    return db.seed("workspaces", {
        "tenant_id": tenant["id"],
        "slug": "default",
        "name": "Default",
        "namespace": "acme-default",
        "quota": {"cpu": "4", "memory": "8Gi", "storage": "50Gi"},
        "status": "active",
    })


@pytest.fixture
def other_workspace(db, tenant):
    return db.seed("workspaces", {
        "tenant_id": tenant["id"],
        "slug": "staging",
        "name": "Staging",
        "namespace": "acme-staging",
        "quota": {},
        "status": "active",
    })


@pytest.fixture
def engine(db, cluster, helm, spawner, seed_recipes):
    runner = WorkflowRunner(max_workers=4)
    supervisor = PortForwardSupervisor(kubectl_bin="kubectl", spawn=spawner, startup_grace_seconds=0)
    eng = DeploymentEngine(db, cluster, helm, supervisor, runner, recipe_service=RecipeService(db))
    eng.dependency_poll_interval = 0.01
    eng.dependency_wait_timeout = 5
    yield eng
    eng.shutdown()


def wait_for(engine, timeout=10):
    assert engine.runner.wait_idle(timeout=timeout), "workflows did not finish"
