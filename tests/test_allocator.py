import re

from inspector.allocator import JobAllocator, SUFFIX_ALPHABET, generate_job_name, node_matches
from inspector.constants import Category
from inspector.schemas import (
    ComponentRule,
    FileFilterRule,
    Node,
    PolicyRule,
    ServiceConnectRule,
    SysctlRule,
)


def _by_category(jobs):
    grouped = {}
    for job in jobs:
        grouped.setdefault(job.category, []).append(job)
    return grouped


def test_generate_job_name_format():
    name = generate_job_name("daily", Category.SYSCTL)
    assert re.fullmatch(rf"daily-sysctl-[{SUFFIX_ALPHABET}]{{5}}", name)


def test_node_matches_requires_every_pair():
    node = Node(name="n", labels={"role": "worker", "zone": "a"})
    assert node_matches(node, {"role": "worker"})
    assert node_matches(node, {"role": "worker", "zone": "a"})
    assert not node_matches(node, {"role": "worker", "zone": "b"})
    assert not node_matches(node, {})


def test_cluster_scoped_categories_get_one_job(two_nodes):
    jobs = JobAllocator("t", two_nodes).partition(
        {
            Category.POLICY: [PolicyRule(name="p1"), PolicyRule(name="p2")],
            Category.SERVICE_CONNECT: [],
            Category.COMPONENT: [],
        }
    )
    grouped = _by_category(jobs)
    assert len(grouped[Category.POLICY]) == 1
    assert [item["name"] for item in grouped[Category.POLICY][0].rule_items()] == ["p1", "p2"]
    assert grouped[Category.POLICY][0].node_name is None
    assert Category.SERVICE_CONNECT not in grouped


def test_component_job_always_present_and_last(two_nodes):
    jobs = JobAllocator("t", two_nodes).partition({Category.SYSCTL: [SysctlRule(name="s1")]})
    assert jobs[-1].category is Category.COMPONENT
    assert jobs[-1].rule_items() == []

    jobs = JobAllocator("t", two_nodes).partition(
        {Category.COMPONENT: [ComponentRule(name="etcd"), ComponentRule(name="coredns")]}
    )
    assert len(jobs) == 1
    assert jobs[0].rule_items() == ["etcd", "coredns"]


def test_node_scoped_items_are_bucketed(two_nodes):
    items = [
        SysctlRule(name="pinned", node_name="node-a"),
        SysctlRule(name="zone-b", node_selector={"zone": "b"}),
        SysctlRule(name="workers", node_selector={"role": "worker"}),
        SysctlRule(name="nowhere", node_selector={"zone": "z"}),
    ]
    jobs = _by_category(JobAllocator("t", two_nodes).partition({Category.SYSCTL: items}))[Category.SYSCTL]
    by_node = {job.node_name: job.rule_items() for job in jobs}
    assert set(by_node) == {"node-a", "node-b"}
    assert [item["name"] for item in by_node["node-a"]] == ["pinned", "workers"]
    assert [item["name"] for item in by_node["node-b"]] == ["zone-b", "workers"]
    assert all(item["nodeName"] == "node-b" for item in by_node["node-b"])


def test_untargeted_items_are_broadcast_to_every_node(two_nodes):
    filters = [FileFilterRule(name="passwd", path="/etc/passwd"), FileFilterRule(name="shadow")]
    jobs = JobAllocator("t", two_nodes).partition({Category.FILE_FILTER: filters})
    filter_jobs = _by_category(jobs)[Category.FILE_FILTER]
    assert sorted(job.node_name for job in filter_jobs) == ["node-a", "node-b"]
    for job in filter_jobs:
        payload = job.rule_items()
        assert [item["name"] for item in payload] == ["passwd", "shadow"]
        assert {item["nodeName"] for item in payload} == {job.node_name}


def test_partition_keeps_every_targeted_item_once(two_nodes):
    items = [SysctlRule(name=f"s{i}", node_name=two_nodes[i % 2].name) for i in range(6)]
    jobs = JobAllocator("t", two_nodes).partition({Category.SYSCTL: items})
    names = [item["name"] for job in jobs if job.category is Category.SYSCTL for item in job.rule_items()]
    assert sorted(names) == sorted(item.name for item in items)


def test_job_names_are_unique(two_nodes):
    jobs = JobAllocator("t", two_nodes).partition(
        {
            Category.SYSCTL: [SysctlRule(name="s")],
            Category.SERVICE_CONNECT: [ServiceConnectRule(name="svc")],
        }
    )
    names = [job.job_name for job in jobs]
    assert len(names) == len(set(names))


def test_clashing_suffixes_are_drawn_again(two_nodes, monkeypatch):
    suffixes = iter(["aaaaa", "aaaaa", "bbbbb", "bbbbb", "aaaaa", "ccccc", "ddddd", "eeeee"])
    monkeypatch.setattr("inspector.allocator.random_suffix", lambda: next(suffixes))
    allocator = JobAllocator("t", two_nodes)

    first = [job.job_name for job in allocator.partition({Category.SYSCTL: [SysctlRule(name="s")]})]
    second = [job.job_name for job in allocator.partition({Category.SYSCTL: [SysctlRule(name="s")]})]

    assert first == ["t-sysctl-aaaaa", "t-sysctl-bbbbb", "t-component-bbbbb"]
    assert second == ["t-sysctl-ccccc", "t-sysctl-ddddd", "t-component-eeeee"]
