from supabase import Client
from app.modules.recipes.schemas import RecipeDefinition
from app.core.exceptions import NotFoundError, InternalError
from fastapi import HTTPException
from typing import Dict, Optional, Tuple
import logging

logger = logging.getLogger(__name__)


class RecipeService:
    """Read-only access to catalog-supplied recipe definitions.

    Parsed definitions are cached per (slug, version, updated_at), so a catalog
    update is picked up on the next lookup.
    """

    def __init__(self, supabase: Client):
        self.supabase = supabase
        self._cache: Dict[Tuple[str, Optional[str], Optional[str]], RecipeDefinition] = {}

    def _fetch(self, slug: str, columns: str):
        try:
            result = self.supabase.table("recipes")\
                .select(columns)\
                .eq("slug", slug)\
                .maybe_single()\
                .execute()
        except Exception as e:
            logger.error(f"Error loading recipe {slug}: {str(e)}")
            raise InternalError()
        return result.data if result else None

    def find_recipe(self, slug: str) -> Optional[RecipeDefinition]:
        stamp = self._fetch(slug, "version, updated_at")
        if not stamp:
            return None
        key = (slug, stamp.get("version"), stamp.get("updated_at"))
        if key in self._cache:
            return self._cache[key]

        row = self._fetch(slug, "*")
        if not row:
            return None
        definition = dict(row.get("definition") or {})
        definition.setdefault("slug", row["slug"])
        definition.setdefault("version", row.get("version") or "1.0.0")
        recipe = RecipeDefinition(**definition)
        self._cache = {k: v for k, v in self._cache.items() if k[0] != slug}
        self._cache[(slug, row.get("version"), row.get("updated_at"))] = recipe
        return recipe

    def get_recipe(self, slug: str) -> RecipeDefinition:
        try:
            recipe = self.find_recipe(slug)
            if recipe is None:
                raise NotFoundError("Recipe", slug)
            return recipe
        except HTTPException:
            raise
        except Exception as e:
            logger.error(f"Error getting recipe {slug}: {str(e)}")
            raise InternalError()
