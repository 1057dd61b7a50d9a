import threading
from datetime import timedelta

import pytest

from conftest import FakeClusterClient
from inspector.constants import LABEL_INSPECT_RULE_GROUP, RULE_GROUP_TEMP, Category, Phase
from inspector.dispatcher import Dispatcher, compute_concurrency
from inspector.schemas import JobSpec
from inspector.timeutil import utcnow


@pytest.mark.parametrize(
    "nodes, categories, expected",
    [(3, 2, 5), (50, 10, 51), (0, 0, 5), (10, 5, 11), (7, 4, 7)],
)
def test_compute_concurrency(nodes, categories, expected):
    assert compute_concurrency(nodes, categories) == expected


def _specs():
    return [
        JobSpec(job_name="t-sysctl-aaaaa", category=Category.SYSCTL, node_name="node-a"),
        JobSpec(job_name="t-sysctl-bbbbb", category=Category.SYSCTL, node_name="node-b"),
        JobSpec(job_name="t-component-ccccc", category=Category.COMPONENT),
    ]


class StepClock:
    def __init__(self, start, step):
        self.current = start
        self.step = step

    def __call__(self):
        value = self.current
        self.current += self.step
        return value


def test_run_creates_and_completes_every_job(fake_client):
    dispatcher = Dispatcher(fake_client, "t", sleep=lambda _: None)
    outcomes = dispatcher.run(_specs(), utcnow(), timedelta(minutes=10))

    assert sorted(o.job_name for o in outcomes) == sorted(s.job_name for s in _specs())
    assert all(o.phase is Phase.SUCCEEDED for o in outcomes)
    assert all(o.cluster_name == "default" for o in outcomes)
    assert sorted(fake_client.created_jobs) == sorted(s.job_name for s in _specs())
    assert {LABEL_INSPECT_RULE_GROUP: RULE_GROUP_TEMP} in fake_client.deleted_selectors


def test_job_manifest_targets_node(fake_client):
    Dispatcher(fake_client, "t", sleep=lambda _: None).run(_specs()[:1], utcnow(), timedelta(minutes=10))
    pod_spec = fake_client.jobs["t-sysctl-aaaaa"]["spec"]["template"]["spec"]
    assert pod_spec["nodeName"] == "node-a"
    assert pod_spec["hostPID"] is True


def test_jobs_past_deadline_are_never_created(fake_client):
    created_at = utcnow() - timedelta(hours=1)
    outcomes = Dispatcher(fake_client, "t", sleep=lambda _: None).run(
        _specs(), created_at, timedelta(minutes=10)
    )
    assert fake_client.created_jobs == []
    assert {o.phase for o in outcomes} == {Phase.FAILED}
    assert len(outcomes) == 3


def test_existing_result_short_circuits_creation(fake_client):
    dispatcher = Dispatcher(fake_client, "t", sleep=lambda _: None)
    specs = _specs()[:1]
    first = dispatcher.run(specs, utcnow(), timedelta(minutes=10))
    second = dispatcher.run(specs, utcnow(), timedelta(minutes=10))

    assert [o.phase for o in first] == [Phase.SUCCEEDED]
    assert [o.phase for o in second] == [Phase.SUCCEEDED]
    assert fake_client.created_jobs == ["t-sysctl-aaaaa"]


def test_already_existing_job_counts_as_success(fake_client):
    fake_client.jobs["t-sysctl-aaaaa"] = {}
    outcomes = Dispatcher(fake_client, "t", sleep=lambda _: None).run(
        _specs()[:1], utcnow(), timedelta(minutes=10)
    )
    assert [o.phase for o in outcomes] == [Phase.SUCCEEDED]


def test_poll_timeout_deletes_job(client_factory):
    client = client_factory(hanging=(Category.SYSCTL,))
    created_at = utcnow()
    clock = StepClock(created_at, timedelta(minutes=4))
    sleeps = []
    outcomes = Dispatcher(client, "t", clock=clock, sleep=sleeps.append, poll_interval=10).run(
        _specs()[:1], created_at, timedelta(minutes=10)
    )

    assert [o.phase for o in outcomes] == [Phase.FAILED]
    assert client.deleted_jobs == [("t-sysctl-aaaaa", "Background")]
    assert sleeps and all(value == 10 for value in sleeps)


def test_failures_are_isolated_per_job(client_factory):
    client = client_factory(
        failing=(Category.COMPONENT,),
        create_errors=(Category.POLICY,),
    )
    specs = _specs() + [JobSpec(job_name="t-opa-ddddd", category=Category.POLICY)]
    outcomes = Dispatcher(client, "t", sleep=lambda _: None).run(specs, utcnow(), timedelta(minutes=10))
    phases = {o.job_name: o.phase for o in outcomes}
    assert phases == {
        "t-sysctl-aaaaa": Phase.SUCCEEDED,
        "t-sysctl-bbbbb": Phase.SUCCEEDED,
        "t-component-ccccc": Phase.FAILED,
        "t-opa-ddddd": Phase.FAILED,
    }


class GatedClient(FakeClusterClient):
    """Holds every poll until ``limit`` polls are waiting at once."""

    def __init__(self, limit, **kwargs):
        super().__init__(**kwargs)
        self.limit = limit
        self.current = 0
        self.peak = 0
        self.released = False
        self.gate = threading.Condition()

    def get_job(self, name):
        with self.gate:
            self.current += 1
            self.peak = max(self.peak, self.current)
            if self.current >= self.limit:
                self.released = True
                self.gate.notify_all()
            self.gate.wait_for(lambda: self.released, timeout=5)
            self.current -= 1
        return super().get_job(name)


def test_in_flight_jobs_never_exceed_budget(two_nodes):
    budget = compute_concurrency(len(two_nodes), 1)
    client = GatedClient(budget, nodes=two_nodes)
    specs = [
        JobSpec(job_name=f"t-sysctl-{i:05d}", category=Category.SYSCTL, node_name=two_nodes[i % 2].name)
        for i in range(budget * 2)
    ]
    outcomes = Dispatcher(client, "t", sleep=lambda _: None).run(specs, utcnow(), timedelta(minutes=10))

    assert client.peak == budget
    assert len(outcomes) == len(specs)
    assert all(o.phase is Phase.SUCCEEDED for o in outcomes)
