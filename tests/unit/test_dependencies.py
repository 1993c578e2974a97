import pytest

from app.core.exceptions import ConflictError, RecipeConfigurationError
from app.modules.deployments.dependencies import (
    DependencyResolver,
    connection_info,
    find_cycle,
    topological_order,
)
from app.modules.deployments.schemas import DeploymentResponse
from app.modules.deployments.service import DeploymentService
from app.modules.recipes.schemas import RecipeDefinition
from app.modules.recipes.service import RecipeService
from tests.fakes import FakeSupabase


def _recipe(slug, deps=(), **extra):
    return {
        "slug": slug,
        "version": "1.0.0",
        "dependencies": [{"recipe": d} if isinstance(d, str) else d for d in deps],
        "release": {"chart": slug},
        **extra,
    }


@pytest.fixture
def db():
    return FakeSupabase()


def _seed(db, *recipes):
    for recipe in recipes:
        db.seed("recipes", {"slug": recipe["slug"], "version": "1.0.0", "definition": recipe})


def _resolver(db):
    return DependencyResolver(DeploymentService(db), RecipeService(db))


def test_topological_order_puts_dependencies_first():
    graph = {"app": ["db", "cache"], "db": [], "cache": ["db"], "worker": ["app"]}
    assert topological_order(graph) == ["db", "cache", "app", "worker"]


def test_topological_order_keeps_insertion_order_for_independent_nodes():
    assert topological_order({"b": [], "a": [], "c": []}) == ["b", "a", "c"]


def test_topological_order_ignores_unknown_nodes():
    assert topological_order({"app": ["external"]}) == ["app"]


def test_cycles():
    assert find_cycle({"a": ["b"], "b": ["c"], "c": ["a"]}) == ["a", "b", "c", "a"]
    assert find_cycle({"a": ["b"], "b": []}) is None
    with pytest.raises(ValueError):
        topological_order({"a": ["b"], "b": ["a"]})


def test_plan_creates_missing_dependencies_recursively(db):
    _seed(db, _recipe("app", ["api"]), _recipe("api", ["db"]), _recipe("db"))
    resolver = _resolver(db)
    plan = resolver.plan("ws", RecipeService(db).get_recipe("app"))
    assert [p.name for p in plan.new] == ["db", "api"]
    assert plan.new[1].depends_on_names == ["db"]
    assert plan.reused == []


def test_plan_reuses_existing_deployment_with_same_name_and_recipe(db):
    _seed(db, _recipe("app", ["db"]), _recipe("db"))
    db.seed("deployments", {"workspace_id": "ws", "name": "db", "recipe_slug": "db", "status": "running",
                            "tenant_id": "t", "recipe_version": "1.0.0", "namespace": "ns", "release_name": "db"})
    plan = _resolver(db).plan("ws", RecipeService(db).get_recipe("app"))
    assert [d.name for d in plan.reused] == ["db"]
    assert plan.new == []


def test_plan_conflicts_when_name_is_taken_by_another_recipe(db):
    _seed(db, _recipe("app", ["db"]), _recipe("db"))
    db.seed("deployments", {"workspace_id": "ws", "name": "db", "recipe_slug": "mysql", "status": "running",
                            "tenant_id": "t", "recipe_version": "1.0.0", "namespace": "ns", "release_name": "db"})
    with pytest.raises(ConflictError):
        _resolver(db).plan("ws", RecipeService(db).get_recipe("app"))


def test_plan_detects_recipe_cycle(db):
    _seed(db, _recipe("a", ["b"]), _recipe("b", ["a"]))
    with pytest.raises(RecipeConfigurationError) as exc:
        _resolver(db).plan("ws", RecipeService(db).get_recipe("a"))
    assert "a -> b -> a" in exc.value.message


def test_plan_rejects_unknown_dependency_recipe(db):
    _seed(db, _recipe("app", ["ghost"]))
    with pytest.raises(RecipeConfigurationError):
        _resolver(db).plan("ws", RecipeService(db).get_recipe("app"))


def test_alias_and_default_config(db):
    _seed(db, _recipe("app", [{"recipe": "db", "alias": "app-db", "default_config": {"size": 2}}]),
          _recipe("db", config_schema={"size": {"type": "integer", "default": 1}}))
    plan = _resolver(db).plan("ws", RecipeService(db).get_recipe("app"))
    assert plan.new[0].name == "app-db"
    assert plan.new[0].config == {"size": 2}


def test_connection_info_renders_recipe_templates():
    recipe = RecipeDefinition(**_recipe("db", connection={
        "host": "{{ name }}-primary.{{ namespace }}.svc",
        "port": "5432",
        "properties": {"database": "{{ config.database }}"},
    }))
    deployment = DeploymentResponse(
        id="1", tenant_id="t", workspace_id="ws", recipe_slug="db", recipe_version="1.0.0",
        name="db", namespace="acme-dev", release_name="db", config={"database": "shop"},
        status="running", service_port=5432,
    )
    info = connection_info(deployment, recipe, {"password": "p"})
    assert info == {
        "name": "db",
        "recipe": "db",
        "host": "db-primary.acme-dev.svc",
        "port": 5432,
        "secrets": {"password": "p"},
        "database": "shop",
    }


def test_connection_info_without_recipe_uses_service_dns():
    deployment = DeploymentResponse(
        id="1", tenant_id="t", workspace_id="ws", recipe_slug="db", recipe_version="1.0.0",
        name="db", namespace="acme-dev", release_name="db", status="running",
        service_name="db-svc", service_port=5432,
    )
    assert connection_info(deployment, None, {})["host"] == "db-svc.acme-dev.svc.cluster.local"
