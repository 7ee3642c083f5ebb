import pytest

from stagehand_automation import runner as runner_mod
from stagehand_automation.errors import ConnectionFailure
from stagehand_automation.executors import Executor
from stagehand_automation.operations.base import Operation
from stagehand_automation.types import ActionResult, ActionSpec, HostConfig, Plan, TaskSpec


class World:
    """Per-host state shared by the fake executors of one test."""

    def __init__(self):
        self.states: dict[str, set[str]] = {}
        self.fail_on: dict[str, set[str]] = {}
        self.unreachable: set[str] = set()
        self.open_errors: dict[str, Exception] = {}
        self.events: list[tuple[str, str]] = []
        self.attempted: list[tuple[str, str]] = []


class FakeExecutor(Executor):
    def __init__(self, host: HostConfig, world: World):
        super().__init__(host)
        self.world = world
        self.state = world.states.setdefault(host.name, set())
        self.fail_on = world.fail_on.get(host.name, set())

    def open(self) -> None:
        if self.host.name in self.world.unreachable:
            raise ConnectionFailure(f"cannot connect to {self.host.name}")
        if self.host.name in self.world.open_errors:
            raise self.world.open_errors[self.host.name]
        self.world.events.append(("open", self.host.name))

    def close(self) -> None:
        self.world.events.append(("close", self.host.name))


class EnsureMarker(Operation):
    action = "marker"

    def __init__(self, spec: dict):
        super().__init__(spec)
        self.name = spec["name"]

    def is_satisfied(self, host, executor) -> bool:
        return self.name in executor.state

    def mutate(self, host, executor) -> str:
        executor.world.attempted.append((host.name, self.name))
        if self.name in executor.fail_on:
            raise RuntimeError(f"{self.name} refused")
        executor.state.add(self.name)
        return f"created {self.name}"


class BrokenCheck(EnsureMarker):
    def is_satisfied(self, host, executor) -> bool:
        raise RuntimeError("cannot inspect")


@pytest.fixture
def world(monkeypatch) -> World:
    world = World()
    monkeypatch.setattr(
        runner_mod,
        "OPERATION_REGISTRY",
        {"user": EnsureMarker, "package": EnsureMarker, "marker": EnsureMarker, "broken": BrokenCheck},
    )
    monkeypatch.setattr(
        runner_mod.TaskRunner, "_executor_for", lambda self, host: FakeExecutor(host, world)
    )
    return world


def build_plan(host_names, actions, groups=None, selectors=None) -> Plan:
    hosts = {name: HostConfig(name=name, connection="ssh", address=f"{name}.example") for name in host_names}
    task = TaskSpec(name="bootstrap", hosts=selectors or [], actions=actions)
    return Plan(hosts=hosts, tasks=[task], groups=groups or {})


def summarize(results):
    return [(r.host, r.resource, r.status) for r in results]


def test_second_run_reports_unchanged(world):
    plan = build_plan(["a"], [ActionSpec(type="user", data={"name": "deploy"})])

    first = runner_mod.TaskRunner(plan).run()
    second = runner_mod.TaskRunner(plan).run()

    assert [r.status for r in first] == ["changed"]
    assert [r.status for r in second] == ["unchanged"]
    assert second[0].details == "noop"
    assert world.attempted == [("a", "deploy")]


def test_create_user_failure_on_one_host_skips_its_package_only(world):
    world.fail_on["a"] = {"deploy"}
    plan = build_plan(
        ["a", "b"],
        [
            ActionSpec(type="user", data={"name": "deploy"}),
            ActionSpec(type="package", data={"name": "nginx"}),
        ],
    )

    results = runner_mod.TaskRunner(plan).run()

    assert summarize(results) == [
        ("a", "deploy", "failed"),
        ("b", "deploy", "changed"),
        ("b", "nginx", "changed"),
    ]
    assert ("a", "nginx") not in world.attempted
    assert results[0].error == "mutation"
    assert "deploy refused" in results[0].details


def test_failure_at_position_stops_later_steps_on_that_host(world):
    world.fail_on["a"] = {"two"}
    actions = [ActionSpec(type="marker", data={"name": n}) for n in ("one", "two", "three")]
    plan = build_plan(["a", "b"], actions)

    results = runner_mod.TaskRunner(plan).run()

    assert [r.resource for r in results if r.host == "a"] == ["one", "two"]
    assert [r.resource for r in results if r.host == "b"] == ["one", "two", "three"]


def test_best_effort_failure_does_not_abort_host(world):
    world.fail_on["a"] = {"optional"}
    actions = [
        ActionSpec(type="marker", data={"name": "optional"}, best_effort=True),
        ActionSpec(type="marker", data={"name": "required"}),
    ]
    plan = build_plan(["a"], actions)

    results = runner_mod.TaskRunner(plan).run()

    assert summarize(results) == [("a", "optional", "failed"), ("a", "required", "changed")]


def test_failure_stops_steps_from_later_tasks(world):
    world.fail_on["a"] = {"deploy"}
    hosts = {"a": HostConfig(name="a")}
    plan = Plan(
        hosts=hosts,
        tasks=[
            TaskSpec(name="accounts", hosts=["a"], actions=[ActionSpec(type="user", data={"name": "deploy"})]),
            TaskSpec(name="packages", hosts=["a"], actions=[ActionSpec(type="package", data={"name": "git"})]),
        ],
    )

    results = runner_mod.TaskRunner(plan).run()

    assert summarize(results) == [("a", "deploy", "failed")]


def test_unreachable_host_is_reported_and_others_continue(world):
    world.unreachable.add("a")
    plan = build_plan(["a", "b"], [ActionSpec(type="user", data={"name": "deploy"})])

    results = runner_mod.TaskRunner(plan).run()

    assert [(r.host, r.action, r.status) for r in results] == [
        ("a", "connect", "failed"),
        ("b", "marker", "changed"),
    ]
    assert results[0].error == "connection"
    assert results[0].resource == "a.example"


def test_connection_is_closed_even_after_failure(world):
    world.fail_on["a"] = {"deploy"}
    plan = build_plan(["a", "b"], [ActionSpec(type="user", data={"name": "deploy"})])

    runner_mod.TaskRunner(plan, forks=1).run()

    assert sorted(world.events) == [("close", "a"), ("close", "b"), ("open", "a"), ("open", "b")]


def test_precondition_failure_is_classified(world):
    plan = build_plan(["a"], [ActionSpec(type="broken", data={"name": "x"})])

    results = runner_mod.TaskRunner(plan).run()

    assert results[0].failed is True
    assert results[0].error == "precondition"
    assert "cannot inspect" in results[0].details
    assert world.attempted == []


def test_unknown_operation_fails_host(world):
    plan = build_plan(
        ["a"],
        [
            ActionSpec(type="nonexistent", data={"name": "x"}),
            ActionSpec(type="marker", data={"name": "after"}),
        ],
    )

    results = runner_mod.TaskRunner(plan).run()

    assert len(results) == 1
    assert results[0].error == "validation"
    assert "unknown operation 'nonexistent'" in results[0].details


def test_runner_handles_operation_init_failure(monkeypatch, world):
    class BadOp:
        def __init__(self, spec: dict):  # noqa: ARG002
            raise ValueError("bad init")

    monkeypatch.setattr(runner_mod, "OPERATION_REGISTRY", {"bad": BadOp})
    plan = build_plan(["a"], [ActionSpec(type="bad", data={})])

    results = runner_mod.TaskRunner(plan).run()

    assert len(results) == 1
    assert results[0].failed is True
    assert results[0].error == "validation"
    assert "bad init" in results[0].details


def test_runner_accepts_operations_returning_results(monkeypatch, world):
    class DummyOperation:
        def __init__(self, spec: dict):
            self.spec = spec

        def apply(self, host: HostConfig, executor):
            return ActionResult(host=host.name, action="dummy", changed=True, details="ok")

    monkeypatch.setattr(runner_mod, "OPERATION_REGISTRY", {"dummy": DummyOperation})
    plan = build_plan(["a"], [ActionSpec(type="dummy", data={"name": "thing"})])

    results = runner_mod.TaskRunner(plan).run()

    assert len(results) == 1
    assert results[0].action == "dummy"
    assert results[0].resource == "thing"


def test_results_follow_inventory_order(world):
    names = [f"host{i}" for i in range(6)]
    plan = build_plan(names, [ActionSpec(type="marker", data={"name": "m"})])

    results = runner_mod.TaskRunner(plan, forks=3).run()

    assert [r.host for r in results] == names


def test_tasks_target_groups_and_hosts(world):
    plan = build_plan(
        ["a", "b", "c"],
        [ActionSpec(type="marker", data={"name": "m"})],
        groups={"web": ["a", "b"]},
        selectors=["web", "b"],
    )

    results = runner_mod.TaskRunner(plan).run()

    assert [r.host for r in results] == ["a", "b"]


def test_limit_restricts_hosts(world):
    plan = build_plan(["a", "b", "c"], [ActionSpec(type="marker", data={"name": "m"})], groups={"db": ["c"]})

    results = runner_mod.TaskRunner(plan, limit=["db", "a"]).run()

    assert [r.host for r in results] == ["a", "c"]


def test_unknown_selector_raises(world):
    plan = build_plan(["a"], [ActionSpec(type="marker", data={"name": "m"})], selectors=["nope"])

    with pytest.raises(KeyError):
        runner_mod.TaskRunner(plan).run()


def test_forks_must_be_positive():
    plan = build_plan(["a"], [])
    with pytest.raises(ValueError):
        runner_mod.TaskRunner(plan, forks=0)


def test_empty_plan_returns_no_results(world):
    plan = build_plan(["a"], [])
    assert runner_mod.TaskRunner(plan).run() == []


def test_unexpected_open_error_only_fails_that_host(world):
    world.open_errors["a"] = LookupError("secret prod/a not found")
    plan = build_plan(["a", "b"], [ActionSpec(type="user", data={"name": "deploy"})])

    results = runner_mod.TaskRunner(plan).run()

    assert [(r.host, r.action, r.status, r.error) for r in results] == [
        ("a", "connect", "failed", "connection"),
        ("b", "marker", "changed", None),
    ]
    assert "prod/a" in results[0].details


def test_executor_construction_error_only_fails_that_host(monkeypatch, world):
    def executor_for(self, host):
        if host.name == "a":
            raise ValueError("Unknown connection type 'winrm'")
        return FakeExecutor(host, world)

    monkeypatch.setattr(runner_mod.TaskRunner, "_executor_for", executor_for)
    plan = build_plan(["a", "b"], [ActionSpec(type="user", data={"name": "deploy"})])

    results = runner_mod.TaskRunner(plan).run()

    assert [(r.host, r.action, r.status) for r in results] == [
        ("a", "connect", "failed"),
        ("b", "marker", "changed"),
    ]
    assert "winrm" in results[0].details
