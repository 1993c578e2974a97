# Supabase tables: deployments, deployment_events
# This file documents the expected database schema
# Actual operations are handled via Supabase SDK in service.py and events.py

"""
Expected Supabase table structure:

deployments
- id: uuid (primary key)
- tenant_id: uuid (foreign key to tenants.id, not null)
- workspace_id: uuid (foreign key to workspaces.id, not null)
- recipe_slug: text (not null)
- recipe_version: text (not null)
- name: text (not null) - DNS label, unique per workspace among non-stopped rows
- namespace: text (not null)
- release_name: text (not null)
- config: jsonb (not null, default: {})
- secret_ref: text (nullable) - name of the cluster secret holding credentials
- depends_on: uuid[] (default: [])
- status: text (not null, default: 'pending') - values: pending, deploying, running, failed, deleting, stopped
- error_message: text (nullable) - classified, plain-language message
- revision: integer (not null, default: 0)
- url: text (nullable)
- local_port: integer (nullable) - unique among non-stopped rows
- service_name: text (nullable)
- service_port: integer (nullable)
- deployment_logs: text[] (default: [])
- created_at: timestamp (default: now())
- updated_at: timestamp (nullable)

deployment_events (append-only audit trail)
- id: uuid (primary key)
- deployment_id: uuid (not null)
- action: text (not null) - created, config_changed, restarted, status_changed, health_changed, failed, removed
- previous_state: jsonb (nullable)
- new_state: jsonb (nullable)
- reason: text (nullable)
- triggered_by: text (nullable) - user id, or 'system' for background transitions
- created_at: timestamp (default: now())
"""
