# Supabase tables: tenants, users
# This file documents the expected database schema
# Actual operations are handled via Supabase SDK in service.py

"""
Expected Supabase table structure:

tenants
- id: uuid (primary key)
- slug: text (unique, not null) - URL-safe
- name: text (not null)
- status: text (not null, default: 'active') - values: active, deleted
- created_at: timestamp (default: now())
- updated_at: timestamp (nullable)

users (profile row per auth user)
- id: uuid (primary key, matches auth.users.id)
- tenant_id: uuid (foreign key to tenants.id, nullable until signup completes)
- email: text
- active_workspace_id: uuid (foreign key to workspaces.id, nullable)
"""
