import base64
import os

import pytest

from app.core.exceptions import ConflictError, DataTransferError, ValidationError
from app.modules.deployments.data_transfer import CHUNK_CHARS
from tests.conftest import FILES_RECIPE, KV_RECIPE, wait_for
from tests.fakes import PodShell


@pytest.fixture
def running(db, cluster, tenant, workspace):
    for recipe in (KV_RECIPE, FILES_RECIPE):
        db.seed("recipes", {"slug": recipe["slug"], "version": recipe["version"], "definition": recipe})

    def make(recipe_slug="kv", name="kv", status="running"):
        cluster.secrets[(workspace["namespace"], f"{name}-credentials")] = {"password": "s3cret"}
        return db.seed("deployments", {
            "tenant_id": tenant["id"],
            "workspace_id": workspace["id"],
            "recipe_slug": recipe_slug,
            "recipe_version": "1.0.0",
            "name": name,
            "namespace": workspace["namespace"],
            "release_name": name,
            "config": {"db": 0},
            "secret_ref": f"{name}-credentials",
            "depends_on": [],
            "status": status,
            "revision": 1,
            "deployment_logs": [],
        })
    return make


def test_export_runs_rendered_command_and_decodes_output(engine, db, cluster, tenant, running):
    deployment = running()
    shell = PodShell(export_bytes=b"REDIS0011" + bytes(range(256)))
    cluster.exec_handler = shell

    exported = engine.export_data(tenant["id"], deployment["id"], triggered_by="user-1")

    assert exported.content == b"REDIS0011" + bytes(range(256))
    assert exported.content_type == "application/octet-stream"
    assert exported.filename.startswith("kv-") and exported.filename.endswith(".rdb")
    assert shell.scripts == ["kv-cli -a s3cret dump --db 0"]
    assert cluster.exec_calls[0]["pod"] == "kv-0"

    events = [e for e in db.rows("deployment_events") if e["deployment_id"] == deployment["id"]]
    assert events[-1]["action"] == "data_exported"
    assert events[-1]["triggered_by"] == "user-1"


def test_files_export_tars_paths_with_excludes(engine, cluster, tenant, running):
    deployment = running("files", name="files")
    shell = PodShell(export_bytes=b"\x1f\x8b")
    cluster.exec_handler = shell

    exported = engine.export_data(tenant["id"], deployment["id"])

    assert shell.scripts == ["tar czf - --exclude '.sys/tmp/*' /data"]
    assert exported.content_type == "application/gzip"
    assert exported.filename.endswith(".tar.gz")


def test_failed_export_reports_stderr(engine, cluster, tenant, running):
    deployment = running()
    cluster.exec_handler = lambda command: {"exit_code": 2, "stdout": "", "stderr": "NOAUTH Authentication required\n"}
    with pytest.raises(DataTransferError) as exc:
        engine.export_data(tenant["id"], deployment["id"])
    assert exc.value.detail == "Export failed: NOAUTH Authentication required"


def test_import_uploads_in_chunks_then_feeds_stdin(engine, cluster, tenant, running):
    deployment = running()
    shell = PodShell()
    cluster.exec_handler = shell
    data = os.urandom(100_000)

    outcome = engine.import_data(tenant["id"], deployment["id"], data)

    assert shell.stdin == data
    assert len(shell.redirects) == -(-len(base64.b64encode(data)) // CHUNK_CHARS)
    assert shell.redirects[0] == ">" and set(shell.redirects[1:]) == {">>"}
    assert shell.scripts == ["kv-cli -a s3cret restore"]
    assert outcome.restart_needed is True
    assert outcome.message == "Data imported successfully into KV Store"


def test_files_import_extracts_archive(engine, cluster, tenant, running):
    deployment = running("files", name="files")
    shell = PodShell()
    cluster.exec_handler = shell

    outcome = engine.import_data(tenant["id"], deployment["id"], b"archive")

    assert shell.scripts == ["tar xzf - -C /"]
    assert outcome.restart_needed is False


def test_failed_import_is_an_error(engine, cluster, tenant, running):
    deployment = running()
    cluster.exec_handler = PodShell(fail_import="disk full")
    with pytest.raises(DataTransferError) as exc:
        engine.import_data(tenant["id"], deployment["id"], b"data")
    assert exc.value.detail == "Import failed: disk full"


def test_transfers_need_a_running_deployment_with_support(engine, cluster, tenant, workspace, running):
    deploying = running(name="busy", status="deploying")
    with pytest.raises(ConflictError):
        engine.export_data(tenant["id"], deploying["id"])

    unsupported = engine.install(tenant["id"], workspace["id"], "cache")
    wait_for(engine)
    with pytest.raises(ValidationError):
        engine.import_data(tenant["id"], unsupported.deployment_id, b"data")

    idle = running(name="idle")
    cluster.unready_releases.add("idle")
    with pytest.raises(ConflictError):
        engine.export_data(tenant["id"], idle["id"])
    assert cluster.exec_calls == []


def test_empty_upload_is_rejected(engine, tenant, running):
    deployment = running()
    with pytest.raises(ValidationError):
        engine.import_data(tenant["id"], deployment["id"], b"")


def test_pod_logs_on_request(engine, cluster, tenant, running):
    deployment = running()
    cluster.pod_logs["kv"] = "--- kv-0 ---\nReady to accept connections"

    assert engine.get_logs(tenant["id"], deployment["id"]).pod_logs is None
    logs = engine.get_logs(tenant["id"], deployment["id"], pod_lines=50)
    assert logs.pod_logs.endswith("Ready to accept connections")
    assert cluster.log_requests == [("acme-default", "kv", 50)]

    cluster.unreachable = True
    logs = engine.get_logs(tenant["id"], deployment["id"], pod_lines=50)
    assert logs.pod_logs == "Failed to retrieve logs. The service may not be running."


def test_pod_logs_of_pending_deployment(engine, cluster, tenant, running):
    deployment = running(name="fresh", status="pending")
    logs = engine.get_logs(tenant["id"], deployment["id"], pod_lines=10)
    assert logs.pod_logs == "Service is pending deployment; no logs available yet."
    assert cluster.log_requests == []
