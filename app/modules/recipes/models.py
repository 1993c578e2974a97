# Supabase table: recipes
# This file documents the expected database schema
# Actual operations are handled via Supabase SDK in service.py

"""
Expected Supabase table structure:
- id: uuid (primary key)
- slug: text (unique, not null)
- version: text (not null)
- definition: jsonb (not null) - full recipe document, see schemas.RecipeDefinition
- created_at: timestamp (default: now())
- updated_at: timestamp (nullable)

Rows are supplied by the catalog (see app/scripts/seed_recipes.py); the
engine only reads them.
"""
