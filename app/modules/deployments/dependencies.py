"""
Dependency Resolver: turns a recipe's declared dependencies into a plan of
deployments to reuse and deployments to create, and renders the connection
info a dependent needs to reach each dependency.
"""

import logging
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from app.core.exceptions import ConflictError, RecipeConfigurationError
from app.modules.deployments.schemas import DeploymentResponse
from app.modules.deployments.template import render_string
from app.modules.recipes.config_schema import validate_config
from app.modules.recipes.schemas import RecipeDefinition

logger = logging.getLogger(__name__)


class PlannedDependency(BaseModel):
    name: str
    recipe: RecipeDefinition
    config: Dict[str, Any] = Field(default_factory=dict)
    depends_on_names: List[str] = Field(default_factory=list)


class DependencyPlan(BaseModel):
    reused: List[DeploymentResponse] = Field(default_factory=list)
    new: List[PlannedDependency] = Field(default_factory=list)  # dependencies first


def find_cycle(graph: Dict[str, List[str]]) -> Optional[List[str]]:
    """Return one cycle in graph (node -> successors) as a path, or None.

    Edges to nodes outside the graph are ignored.
    """
    visiting: List[str] = []
    done = set()

    def visit(node: str) -> Optional[List[str]]:
        if node in done:
            return None
        if node in visiting:
            return visiting[visiting.index(node):] + [node]
        visiting.append(node)
        for nxt in graph.get(node, []):
            if nxt not in graph:
                continue
            cycle = visit(nxt)
            if cycle:
                return cycle
        visiting.pop()
        done.add(node)
        return None

    for node in graph:
        cycle = visit(node)
        if cycle:
            return cycle
    return None


def topological_order(graph: Dict[str, List[str]]) -> List[str]:
    """Kahn's algorithm over node -> dependencies; dependencies come first and
    insertion order breaks ties. Raises ValueError on a cycle."""
    remaining = {node: [d for d in deps if d in graph] for node, deps in graph.items()}
    order: List[str] = []
    while remaining:
        ready = [node for node, deps in remaining.items() if not deps]
        if not ready:
            raise ValueError(f"Dependency cycle among: {', '.join(remaining)}")
        for node in ready:
            order.append(node)
            del remaining[node]
        for deps in remaining.values():
            deps[:] = [d for d in deps if d not in ready]
    return order


class DependencyResolver:
    def __init__(self, deployment_service, recipe_service):
        self.deployments = deployment_service
        self.recipes = recipe_service

    def plan(self, workspace_id: str, recipe: RecipeDefinition) -> DependencyPlan:
        plan = DependencyPlan()
        self._plan_into(plan, workspace_id, recipe, [recipe.slug])
        return plan

    def _plan_into(self, plan: DependencyPlan, workspace_id: str, recipe: RecipeDefinition, stack: List[str]):
        for spec in recipe.dependencies:
            if spec.recipe in stack:
                cycle = " -> ".join(stack + [spec.recipe])
                raise RecipeConfigurationError(
                    f"Dependency cycle detected: {cycle}",
                    [{"field": "dependencies", "message": cycle}],
                )
            name = spec.name
            if any(d.name == name for d in plan.reused) or any(d.name == name for d in plan.new):
                continue

            existing = self.deployments.find_active_by_name(workspace_id, name)
            if existing is not None:
                if existing.recipe_slug != spec.recipe:
                    raise ConflictError(
                        f"Dependency '{name}' is needed as {spec.recipe} but a {existing.recipe_slug} "
                        f"deployment already uses that name"
                    )
                plan.reused.append(existing)
                continue

            dep_recipe = self.recipes.find_recipe(spec.recipe)
            if dep_recipe is None:
                raise RecipeConfigurationError(
                    f"Recipe '{recipe.slug}' depends on unknown recipe '{spec.recipe}'",
                    [{"field": "dependencies", "message": f"Unknown recipe '{spec.recipe}'"}],
                )
            self._plan_into(plan, workspace_id, dep_recipe, stack + [spec.recipe])
            config = validate_config(dep_recipe.config_schema, spec.default_config)
            plan.new.append(PlannedDependency(
                name=name,
                recipe=dep_recipe,
                config=config,
                depends_on_names=[d.name for d in dep_recipe.dependencies],
            ))
            logger.info(f"Planned new dependency {name} ({spec.recipe}) for {recipe.slug}")


def connection_info(
    deployment: DeploymentResponse,
    recipe: Optional[RecipeDefinition],
    secrets: Dict[str, str],
) -> Dict[str, Any]:
    """Host, port and recipe-declared properties a dependent uses to reach this deployment."""
    context = {
        "name": deployment.name,
        "namespace": deployment.namespace,
        "config": deployment.config or {},
        "secrets": secrets,
        "service_name": deployment.service_name or deployment.name,
        "service_port": deployment.service_port,
    }
    info: Dict[str, Any] = {
        "name": deployment.name,
        "recipe": deployment.recipe_slug,
        "host": f"{deployment.service_name or deployment.name}.{deployment.namespace}.svc.cluster.local",
        "port": deployment.service_port,
        "secrets": secrets,
    }
    connection = recipe.connection if recipe else None
    if connection is None:
        return info
    info["host"] = render_string(connection.host, context)
    if connection.port:
        port = render_string(connection.port, context)
        info["port"] = int(port) if port.isdigit() else port
    for key, source in connection.properties.items():
        info[key] = render_string(source, context)
    return info
