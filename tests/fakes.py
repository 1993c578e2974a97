"""In-memory stand-ins for the Supabase client, the cluster and helm."""

import base64
import copy
import re
import threading
import uuid
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

from app.cluster.kubernetes_client import PodUnavailableError


class _Result:
    def __init__(self, data):
        self.data = data


class _Query:
    def __init__(self, db: "FakeSupabase", table: str):
        self.db = db
        self.table_name = table
        self.op = "select"
        self.payload: Any = None
        self.filters: List = []
        self.order_by: Optional[tuple] = None
        self.limit_n: Optional[int] = None
        self.single_mode: Optional[str] = None

    def select(self, *_columns, **_kwargs):
        self.op = "select"
        return self

    def insert(self, payload):
        self.op = "insert"
        self.payload = payload
        return self

    def update(self, payload):
        self.op = "update"
        self.payload = payload
        return self

    def delete(self):
        self.op = "delete"
        return self

    def eq(self, column, value):
        self.filters.append(lambda row: row.get(column) == value)
        return self

    def neq(self, column, value):
        self.filters.append(lambda row: row.get(column) != value)
        return self

    def in_(self, column, values):
        values = list(values)
        self.filters.append(lambda row: row.get(column) in values)
        return self

    def contains(self, column, values):
        self.filters.append(lambda row: all(v in (row.get(column) or []) for v in values))
        return self

    def order(self, column, desc=False):
        self.order_by = (column, desc)
        return self

    def limit(self, n):
        self.limit_n = n
        return self

    def maybe_single(self):
        self.single_mode = "maybe"
        return self

    def single(self):
        self.single_mode = "single"
        return self

    def _matches(self, row):
        return all(f(row) for f in self.filters)

    def execute(self):
        with self.db.lock:
            if self.db.fail_tables.get(self.table_name):
                raise Exception(self.db.fail_tables[self.table_name])
            rows = self.db.tables.setdefault(self.table_name, [])
            if self.op == "insert":
                items = self.payload if isinstance(self.payload, list) else [self.payload]
                created = []
                for item in items:
                    row = {"id": str(uuid.uuid4()), "created_at": self.db.next_timestamp(), **copy.deepcopy(item)}
                    rows.append(row)
                    created.append(copy.deepcopy(row))
                return _Result(created)
            if self.op == "update":
                updated = []
                for row in rows:
                    if self._matches(row):
                        row.update(copy.deepcopy(self.payload))
                        updated.append(copy.deepcopy(row))
                return _Result(updated)
            if self.op == "delete":
                removed = [row for row in rows if self._matches(row)]
                self.db.tables[self.table_name] = [row for row in rows if not self._matches(row)]
                return _Result(copy.deepcopy(removed))

            found = [copy.deepcopy(row) for row in rows if self._matches(row)]
            if self.order_by:
                column, desc = self.order_by
                found.sort(key=lambda row: str(row.get(column) or ""), reverse=desc)
            if self.limit_n is not None:
                found = found[:self.limit_n]
            if self.single_mode == "maybe":
                return _Result(found[0]) if found else None
            if self.single_mode == "single":
                if len(found) != 1:
                    raise Exception("JSON object requested, multiple (or no) rows returned")
                return _Result(found[0])
            return _Result(found)


class FakeSupabase:
    def __init__(self):
        self.lock = threading.RLock()
        self.tables: Dict[str, List[Dict[str, Any]]] = {}
        self.fail_tables: Dict[str, str] = {}
        self._clock = datetime(2024, 1, 1, tzinfo=timezone.utc)
        self.users: Dict[str, Dict[str, Any]] = {}
        self.auth = SimpleNamespace(get_user=self._get_user)

    def table(self, name: str) -> _Query:
        return _Query(self, name)

    def next_timestamp(self) -> str:
        self._clock += timedelta(milliseconds=1)
        return self._clock.isoformat()

    def rows(self, table: str) -> List[Dict[str, Any]]:
        with self.lock:
            return copy.deepcopy(self.tables.get(table, []))

    def seed(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        return self.table(table).insert(row).execute().data[0]

    def _get_user(self, jwt=None):
        user = self.users.get(jwt)
        if user is None:
            raise Exception("invalid JWT")
        return SimpleNamespace(user=SimpleNamespace(
            id=user["id"], email=user.get("email"), user_metadata={}
        ))


class FakeCluster:
    """Records cluster calls; readiness and quota are scriptable."""

    def __init__(self):
        self.lock = threading.Lock()
        self.namespaces: Dict[str, Dict[str, str]] = {}
        self.quotas: Dict[str, Dict[str, Dict[str, str]]] = {}
        self.policies: Dict[str, str] = {}
        self.secrets: Dict[tuple, Dict[str, str]] = {}
        self.deleted_pvcs: List[tuple] = []
        self.ready = True
        self.fail_quota = False
        self.fail_network_policy = False
        self.unreachable = False
        self.readiness_stop_events: List[Any] = []
        self.unready_releases: set = set()
        self.exec_calls: List[Dict[str, Any]] = []
        self.exec_handler = None
        self.pod_logs: Dict[str, str] = {}
        self.log_requests: List[tuple] = []

    def ping(self):
        if self.unreachable:
            raise Exception("dial tcp: connection refused")

    def create_namespace(self, name, labels):
        with self.lock:
            if name in self.namespaces:
                return False
            self.namespaces[name] = dict(labels)
            return True

    def delete_namespace(self, name):
        with self.lock:
            return self.namespaces.pop(name, None) is not None

    def apply_resource_quota(self, namespace, name, hard, labels=None):
        if self.fail_quota:
            raise Exception("forbidden: cannot create resourcequotas")
        with self.lock:
            self.quotas[namespace] = {"hard": dict(hard), "used": {}}

    def get_resource_quota(self, namespace):
        with self.lock:
            return copy.deepcopy(self.quotas.get(namespace))

    def set_quota(self, namespace, hard, used):
        with self.lock:
            self.quotas[namespace] = {"hard": dict(hard), "used": dict(used)}

    def apply_network_policy(self, namespace, name, ingress_namespace, labels=None):
        if self.fail_network_policy:
            raise Exception("networkpolicies is forbidden")
        with self.lock:
            self.policies[namespace] = name

    def write_secret(self, namespace, name, data, labels=None):
        with self.lock:
            self.secrets[(namespace, name)] = dict(data)

    def read_secret(self, namespace, name):
        with self.lock:
            return dict(self.secrets.get((namespace, name), {}))

    def delete_secret(self, namespace, name):
        with self.lock:
            return self.secrets.pop((namespace, name), None) is not None

    def delete_pvcs(self, namespace, label_selector):
        with self.lock:
            self.deleted_pvcs.append((namespace, label_selector))
        return 1

    def list_pods(self, namespace, label_selector):
        return []

    def pods_ready(self, namespace, label_selector):
        return self.ready

    def wait_for_ready(self, namespace, label_selector, timeout_seconds, poll_seconds=3.0, stop_event=None):
        self.readiness_stop_events.append(stop_event)
        if stop_event is not None and stop_event.is_set():
            return False
        return self.ready

    def find_ready_pod(self, namespace, instance):
        if instance in self.unready_releases:
            raise PodUnavailableError(f"No ready pods found for '{instance}' (1 pod(s) exist but none are ready)")
        return f"{instance}-0", "main"

    def exec_in_pod(self, namespace, pod_name, command, container=None, timeout_seconds=600):
        with self.lock:
            self.exec_calls.append({"namespace": namespace, "pod": pod_name, "command": list(command)})
        if self.exec_handler is not None:
            return self.exec_handler(command)
        return {"exit_code": 0, "stdout": "", "stderr": ""}

    def read_release_logs(self, namespace, instance, lines=100):
        if self.unreachable:
            raise Exception("dial tcp: connection refused")
        self.log_requests.append((namespace, instance, lines))
        return self.pod_logs.get(instance, f"No pods found for '{instance}' in namespace '{namespace}'.")


class FakeHelm:
    """Scripted helm: queue failures with fail_next(); everything else succeeds."""

    def __init__(self):
        self.lock = threading.Lock()
        self.calls: List[Dict[str, Any]] = []
        self.releases: Dict[tuple, int] = {}
        self.failures: List[str] = []
        self.uninstall_failures: List[str] = []
        self.status_overrides: Dict[tuple, Optional[str]] = {}
        self.gates: Dict[str, threading.Event] = {}

    def hold(self, release_name: str) -> threading.Event:
        """Block upgrade_install of release_name until the returned event is set."""
        gate = threading.Event()
        self.gates[release_name] = gate
        return gate

    def fail_next(self, error: str):
        with self.lock:
            self.failures.append(error)

    def upgrade_install(self, release_name, chart, namespace, values, chart_version=None,
                        repo_url=None, deployment_id=None, log_callback=None):
        with self.lock:
            self.calls.append({
                "op": "upgrade_install", "release": release_name, "chart": chart,
                "namespace": namespace, "values": values,
            })
        gate = self.gates.get(release_name)
        if gate is not None:
            gate.wait(timeout=10)
        with self.lock:
            if self.failures:
                return {"success": False, "error": self.failures.pop(0), "revision": None}
            key = (namespace, release_name)
            self.releases[key] = self.releases.get(key, 0) + 1
            revision = self.releases[key]
        if log_callback:
            log_callback([f"Release \"{release_name}\" has been upgraded."])
        return {"success": True, "error": None, "revision": revision}

    def uninstall(self, release_name, namespace, deployment_id=None, log_callback=None):
        with self.lock:
            self.calls.append({"op": "uninstall", "release": release_name, "namespace": namespace})
            if self.uninstall_failures:
                return {"success": False, "error": self.uninstall_failures.pop(0), "not_found": False}
            found = self.releases.pop((namespace, release_name), None) is not None
        return {"success": True, "error": None, "not_found": not found}

    def status(self, release_name, namespace):
        key = (namespace, release_name)
        with self.lock:
            if key in self.status_overrides:
                return self.status_overrides[key]
            return "deployed" if key in self.releases else None

    def installs_of(self, release_name):
        return [c for c in self.calls if c["op"] == "upgrade_install" and c["release"] == release_name]


class FakeProcess:
    """Popen look-alike for port-forward tests."""

    _next_pid = 1000

    def __init__(self, exit_code: Optional[int] = None):
        FakeProcess._next_pid += 1
        self.pid = FakeProcess._next_pid
        self.returncode = exit_code
        self.stderr = None
        self.terminated = False
        self.waited = False

    def poll(self):
        return self.returncode

    def terminate(self):
        self.terminated = True
        self.returncode = -15

    def kill(self):
        self.returncode = -9

    def wait(self, timeout=None):
        self.waited = True
        return self.returncode

    def die(self):
        self.returncode = 1


class FakeSpawner:
    def __init__(self):
        self.commands: List[List[str]] = []
        self.processes: List[FakeProcess] = []
        self.exit_immediately = False

    def __call__(self, cmd, **kwargs):
        self.commands.append(cmd)
        proc = FakeProcess(exit_code=1 if self.exit_immediately else None)
        self.processes.append(proc)
        return proc


_EXPORT_SCRIPT = re.compile(r"^\((.*)\) > (\S+) && base64 \2; rc=\$\?; rm -f \2; exit \$rc$")
_UPLOAD_CHUNK = re.compile(r"^printf '%s' '([A-Za-z0-9+/=]*)' \| base64 -d (>>?) (\S+)$")
_IMPORT_SCRIPT = re.compile(r"^\((.*)\) < (\S+); rc=\$\?; rm -f \2; exit \$rc$")


class PodShell:
    """exec_handler for FakeCluster: interprets the sh -c scripts of data export and import."""

    def __init__(self, export_bytes: bytes = b"", fail_import: Optional[str] = None):
        self.export_bytes = export_bytes
        self.fail_import = fail_import
        self.files: Dict[str, bytes] = {}
        self.scripts: List[str] = []
        self.redirects: List[str] = []
        self.stdin: Optional[bytes] = None

    def __call__(self, command):
        assert command[:2] == ["sh", "-c"]
        script = command[2]
        match = _EXPORT_SCRIPT.match(script)
        if match:
            self.scripts.append(match.group(1))
            return {"exit_code": 0, "stdout": base64.encodebytes(self.export_bytes).decode(), "stderr": ""}
        match = _UPLOAD_CHUNK.match(script)
        if match:
            chunk, redirect, path = match.groups()
            self.redirects.append(redirect)
            previous = self.files.get(path, b"") if redirect == ">>" else b""
            self.files[path] = previous + base64.b64decode(chunk)
            return {"exit_code": 0, "stdout": "", "stderr": ""}
        match = _IMPORT_SCRIPT.match(script)
        if match:
            self.scripts.append(match.group(1))
            self.stdin = self.files.pop(match.group(2))
            if self.fail_import:
                return {"exit_code": 1, "stdout": "", "stderr": self.fail_import}
        return {"exit_code": 0, "stdout": "", "stderr": ""}
