# Supabase table: workspaces
# This file documents the expected database schema
# Actual operations are handled via Supabase SDK in service.py

"""
Expected Supabase table structure:
- id: uuid (primary key)
- tenant_id: uuid (foreign key to tenants.id, not null)
- slug: text (not null) - unique per tenant among non-deleted rows
- name: text (not null)
- namespace: text (not null) - '{tenant_slug}-{workspace_slug}', unique among non-deleted rows
- quota: jsonb (not null) - {cpu, memory, storage}
- status: text (not null, default: 'active') - values: active, deleting, deleted
- created_at: timestamp (default: now())
- updated_at: timestamp (nullable)

users.active_workspace_id points at the workspace a user works in by default.
"""
