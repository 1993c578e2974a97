"""
Seed Recipes Script
Loads the built-in recipe definitions into the recipes table.
Can be run manually after a catalog change; existing slugs are updated in place.
"""

import sys
from datetime import datetime
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent.parent
sys.path.insert(0, str(project_root))

from app.database.supabase_client import get_service_supabase
from app.modules.recipes.schemas import RecipeDefinition
from supabase import Client
import logging
import yaml

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

RECIPES_YAML = """
- slug: postgresql
  version: "16.4.0"
  display_name: PostgreSQL
  category: database
  description: Relational database
  config_schema:
    database: {type: string, default: app, pattern: "^[a-z_][a-z0-9_]*$"}
    username: {type: string, default: app, max_length: 63}
    storage: {type: string, default: 5Gi}
  secrets_schema:
    password: {generate: true, length: 24}
    postgres_password: {generate: true, length: 24}
  resources: {cpu: 500m, memory: 512Mi, storage: 5Gi}
  release:
    chart: postgresql
    version: "16.4.0"
    repo_url: https://charts.bitnami.com/bitnami
    service_name: "{{ name }}"
    service_port: 5432
    values_template: |
      fullnameOverride: {{ name }}
      auth:
        database: {{ config.database }}
        username: {{ config.username }}
        password: {{ secrets.password }}
        postgresPassword: {{ secrets.postgres_password }}
      primary:
        persistence:
          size: {{ config.storage }}
        resources:
          limits: {cpu: 500m, memory: 512Mi}
          requests: {cpu: 250m, memory: 256Mi}
  connection:
    port: "5432"
    properties:
      database: "{{ config.database }}"
      username: "{{ config.username }}"

- slug: redis
  version: "20.6.0"
  display_name: Redis
  category: database
  description: In-memory key-value store
  config_schema:
    storage: {type: string, default: 1Gi}
  secrets_schema:
    password: {generate: true, length: 24}
  resources: {cpu: 250m, memory: 256Mi, storage: 1Gi}
  release:
    chart: redis
    version: "20.6.0"
    repo_url: https://charts.bitnami.com/bitnami
    service_name: "{{ name }}-master"
    service_port: 6379
    values_template: |
      fullnameOverride: {{ name }}
      architecture: standalone
      auth:
        password: {{ secrets.password }}
      master:
        persistence:
          size: {{ config.storage }}
        resources:
          limits: {cpu: 250m, memory: 256Mi}
  connection:
    host: "{{ name }}-master.{{ namespace }}.svc.cluster.local"
    port: "6379"
  data_export:
    description: Redis RDB snapshot (point-in-time dump of all keys and values)
    type: command
    command: redis-cli -a "$REDIS_PASSWORD" --no-auth-warning --rdb /tmp/dump.rdb > /dev/null && cat /tmp/dump.rdb && rm -f /tmp/dump.rdb
    content_type: application/octet-stream
    file_extension: rdb
  data_import:
    description: Restore from an RDB dump file
    type: command
    command: cat > /tmp/restore.rdb && cp /tmp/restore.rdb /bitnami/redis/data/dump.rdb && (redis-cli -a "$REDIS_PASSWORD" --no-auth-warning shutdown nosave || true)
    restart_after_import: true

- slug: n8n
  version: "1.0.0"
  display_name: n8n
  category: automation
  description: Workflow automation
  config_schema:
    timezone: {type: string, default: UTC}
    executions_prune: {type: boolean, default: true}
    prune_max_age_hours: {type: integer, default: 336, min: 1, max: 8760}
  secrets_schema:
    encryption_key: {generate: true, length: 32}
  dependencies:
    - recipe: postgresql
      reason: workflow and execution storage
      default_config: {database: n8n, username: n8n}
  resources: {cpu: 500m, memory: 512Mi, storage: 1Gi}
  release:
    chart: oci://8gears.container-registry.com/library/n8n
    version: "1.0.0"
    service_name: "{{ name }}"
    service_port: 80
    values_template: |
      fullnameOverride: {{ name }}
      main:
        config:
          generic:
            timezone: {{ config.timezone }}
          executions_pruning: {{ config.executions_prune | lower }}
          executions_pruning_max_age: {{ config.prune_max_age_hours }}
          db:
            type: postgresdb
            postgresdb:
              host: {{ deps.postgresql.host }}
              port: {{ deps.postgresql.port }}
              database: {{ deps.postgresql.database }}
              user: {{ deps.postgresql.username }}
        secret:
          n8n:
            encryption_key: {{ secrets.encryption_key }}
          db:
            postgresdb:
              password: {{ deps.postgresql.secrets.password }}
        podAnnotations:
          appyard.io/restarted-at: "{{ restart_token or '' }}"
      ingress:
        enabled: {{ ingress.enabled | lower }}
        className: {{ ingress.class_name }}
        hosts:
          - host: {{ ingress.host }}
            paths: ["/"]

- slug: minio
  version: "14.10.0"
  display_name: MinIO
  category: storage
  description: S3-compatible object storage
  config_schema:
    storage: {type: string, default: 10Gi}
    default_buckets: {type: string, default: "", description: comma-separated bucket names}
  secrets_schema:
    root_password: {generate: true, length: 32}
  resources: {cpu: 500m, memory: 1Gi, storage: 10Gi}
  release:
    chart: minio
    version: "14.10.0"
    repo_url: https://charts.bitnami.com/bitnami
    service_name: "{{ name }}"
    service_port: 9000
    values_template: |
      fullnameOverride: {{ name }}
      auth:
        rootUser: admin
        rootPassword: {{ secrets.root_password }}
      defaultBuckets: "{{ config.default_buckets }}"
      persistence:
        size: {{ config.storage }}
  connection:
    port: "9000"
    properties:
      access_key: admin
  data_export:
    description: Full archive of all stored files and buckets
    type: files
    paths: [/bitnami/minio/data]
    exclude: [".minio.sys/tmp/*"]
  data_import:
    description: Restore files and buckets from a previous export
    type: files
    extract_path: /
    restart_after_import: true

- slug: uptime-kuma
  version: "2.21.0"
  display_name: Uptime Kuma
  category: monitoring
  description: Self-hosted uptime monitoring
  config_schema:
    storage: {type: string, default: 2Gi}
  resources: {cpu: 200m, memory: 256Mi, storage: 2Gi}
  release:
    chart: uptime-kuma
    version: "2.21.0"
    repo_url: https://helm.irsigler.cloud
    service_name: "{{ name }}"
    service_port: 3001
    values_template: |
      fullnameOverride: {{ name }}
      volume:
        size: {{ config.storage }}
  data_export:
    description: SQLite database with all monitors, status pages and notification settings
    type: files
    paths: [/app/data/kuma.db]
  data_import:
    description: Restore monitors and settings from a previous export
    type: files
    extract_path: /
    restart_after_import: true
"""


def load_recipes() -> list:
    """Parse and validate the built-in definitions"""
    return [RecipeDefinition(**item) for item in yaml.safe_load(RECIPES_YAML)]


def seed_recipes(supabase: Client) -> int:
    logger.info("Seeding recipes...")
    count = 0
    for recipe in load_recipes():
        row = {
            "slug": recipe.slug,
            "version": recipe.version,
            "definition": recipe.model_dump(exclude_none=True),
        }
        try:
            existing = supabase.table("recipes")\
                .select("slug")\
                .eq("slug", recipe.slug)\
                .execute()
            if existing.data:
                supabase.table("recipes")\
                    .update({**row, "updated_at": datetime.utcnow().isoformat()})\
                    .eq("slug", recipe.slug)\
                    .execute()
                logger.debug(f"Updated recipe: {recipe.slug}")
            else:
                supabase.table("recipes").insert(row).execute()
                logger.debug(f"Created recipe: {recipe.slug}")
            count += 1
        except Exception as e:
            logger.error(f"Error seeding recipe {recipe.slug}: {e}")
    logger.info(f"Seeded {count} recipes")
    return count


def main():
    try:
        seed_recipes(get_service_supabase())
    except Exception as e:
        logger.error(f"Error during seeding: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
