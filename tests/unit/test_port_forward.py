import pytest

from app.modules.deployments.port_forward import ForwardTarget, PortForwardError, PortForwardSupervisor
from tests.fakes import FakeSpawner


def _target(deployment_id="d1", port=10001):
    return ForwardTarget(
        deployment_id=deployment_id, namespace="acme-dev",
        service_name="db", service_port=5432, local_port=port,
    )


@pytest.fixture
def spawner():
    return FakeSpawner()


@pytest.fixture
def supervisor(spawner):
    return PortForwardSupervisor(kubectl_bin="kubectl", spawn=spawner, startup_grace_seconds=0)


def test_start_runs_kubectl_port_forward(supervisor, spawner):
    url = supervisor.start(_target())
    assert url == "http://localhost:10001"
    cmd = spawner.commands[0]
    assert cmd[:4] == ["kubectl", "port-forward", "svc/db", "10001:5432"]
    assert cmd[cmd.index("-n") + 1] == "acme-dev"
    assert supervisor.is_active("d1")


def test_start_replaces_existing_forward(supervisor, spawner):
    supervisor.start(_target())
    supervisor.start(_target(port=10002))
    assert spawner.processes[0].terminated
    assert supervisor.active_ids() == ["d1"]


def test_immediate_exit_is_an_error(supervisor, spawner):
    spawner.exit_immediately = True
    with pytest.raises(PortForwardError):
        supervisor.start(_target())
    assert not supervisor.is_active("d1")


def test_sweep_restarts_dead_forwards_and_drops_removed(supervisor, spawner):
    supervisor.start(_target("d1", 10001))
    supervisor.start(_target("d2", 10002))
    spawner.processes[0].die()
    spawner.processes[1].die()

    result = supervisor.sweep(lambda deployment_id: _target("d1", 10001) if deployment_id == "d1" else None)

    assert result == {"restarted": 1, "dropped": 1}
    assert supervisor.active_ids() == ["d1"]
    assert len(spawner.commands) == 3


def test_sweep_reaps_dead_forward_even_when_lookup_fails(supervisor, spawner):
    supervisor.start(_target("d1", 10001))
    spawner.processes[0].die()

    def lookup(deployment_id):
        raise RuntimeError("database unavailable")

    assert supervisor.sweep(lookup) == {"restarted": 0, "dropped": 0}
    assert spawner.processes[0].waited
    assert not supervisor.is_active("d1")


def test_ensure_starts_only_missing(supervisor, spawner):
    supervisor.start(_target("d1", 10001))
    started = supervisor.ensure([_target("d1", 10001), _target("d2", 10002)])
    assert started == 1
    assert sorted(supervisor.active_ids()) == ["d1", "d2"]


def test_stop_all(supervisor, spawner):
    supervisor.start(_target("d1", 10001))
    supervisor.start(_target("d2", 10002))
    assert supervisor.stop_all() == 2
    assert all(p.terminated for p in spawner.processes)
    assert supervisor.active_ids() == []
