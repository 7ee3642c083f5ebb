from pathlib import Path
import textwrap

import pytest

from stagehand_automation.inventory import InventoryLoader


def write_plan(tmp_path: Path, body: str, name: str = "plan.toml") -> Path:
    plan_path = tmp_path / name
    plan_path.write_text(textwrap.dedent(body).strip())
    return plan_path


def test_loads_default_local_host(tmp_path: Path) -> None:
    plan_path = write_plan(
        tmp_path,
        """
        [[tasks]]
        name = "basic"

          [[tasks.actions]]
          type = "file"
          path = "/tmp/demo"
        """,
    )

    plan = InventoryLoader().load(plan_path)

    assert set(plan.hosts) == {"local"}
    assert plan.hosts["local"].connection == "local"
    assert plan.tasks[0].hosts == []
    assert plan.tasks[0].actions[0].type == "file"


def test_ssh_hosts_and_groups(tmp_path: Path) -> None:
    plan_path = write_plan(
        tmp_path,
        """
        [hosts.web1]
        address = "10.0.0.11"
        user = "deploy"
        port = 2222
        credential = "~/.ssh/id_ed25519"
        become = true

          [hosts.web1.variables]
          role = "primary"

        [hosts.web2]
        address = "10.0.0.12"
        credential = { password = { env = "WEB2_PASSWORD" } }

        [groups]
        web = { hosts = ["web1", "web2"], variables = { role = "web", tier = "front" } }
        db = [{ name = "db1", address = "10.0.0.21", user = "admin" }]

        [[tasks]]
        name = "web"
        hosts = ["web"]

          [[tasks.actions]]
          type = "package"
          name = "nginx"
        """,
    )

    plan = InventoryLoader().load(plan_path)

    assert list(plan.hosts) == ["web1", "web2", "db1"]
    web1 = plan.hosts["web1"]
    assert web1.connection == "ssh"
    assert (web1.address, web1.user, web1.port, web1.become) == ("10.0.0.11", "deploy", 2222, True)
    assert web1.credential.kind == "key_file"
    assert web1.credential.value == "~/.ssh/id_ed25519"
    assert web1.groups == ["web"]
    assert web1.variables == {"role": "primary", "tier": "front"}

    web2 = plan.hosts["web2"]
    assert web2.credential.kind == "password"
    assert web2.credential.value == {"env": "WEB2_PASSWORD"}
    assert web2.variables == {"role": "web", "tier": "front"}

    db1 = plan.hosts["db1"]
    assert (db1.address, db1.user, db1.groups) == ("10.0.0.21", "admin", ["db"])
    assert plan.groups == {"web": ["web1", "web2"], "db": ["db1"]}
    assert plan.tasks[0].hosts == ["web"]


def test_missing_action_type_raises(tmp_path: Path) -> None:
    plan_path = write_plan(
        tmp_path,
        """
        [[tasks]]
        name = "broken"

          [[tasks.actions]]
          path = "/tmp/demo"
        """,
    )

    with pytest.raises(ValueError, match="missing a type"):
        InventoryLoader().load(plan_path)


def test_best_effort_is_split_from_action_data(tmp_path: Path) -> None:
    plan_path = write_plan(
        tmp_path,
        """
        [[tasks]]
        name = "optional"

          [[tasks.actions]]
          type = "exec"
          command = "true"
          best_effort = true
        """,
    )

    action = InventoryLoader().load(plan_path).tasks[0].actions[0]

    assert action.best_effort is True
    assert "best_effort" not in action.data
    assert "type" not in action.data


def test_best_effort_must_be_bool() -> None:
    data = {"tasks": [{"name": "x", "actions": [{"type": "exec", "command": "true", "best_effort": "yes"}]}]}
    with pytest.raises(ValueError, match="best_effort"):
        InventoryLoader().parse(data)


def test_task_targeting_unknown_group_raises() -> None:
    data = {
        "hosts": {"a": {"address": "10.0.0.1"}},
        "tasks": [{"name": "x", "hosts": ["missing"], "actions": []}],
    }
    with pytest.raises(ValueError, match="unknown host or group 'missing'"):
        InventoryLoader().parse(data)


def test_group_referencing_undefined_host_raises() -> None:
    with pytest.raises(ValueError, match="undefined host"):
        InventoryLoader().parse({"groups": {"web": ["ghost"]}})


def test_conflicting_inline_host_definitions_raise() -> None:
    data = {
        "hosts": {"db1": {"address": "10.0.0.21"}},
        "groups": {"db": [{"name": "db1", "address": "10.0.0.99"}]},
    }
    with pytest.raises(ValueError, match="more than once"):
        InventoryLoader().parse(data)


def test_ssh_host_requires_address() -> None:
    with pytest.raises(ValueError, match="no address"):
        InventoryLoader().parse({"hosts": {"a": {"connection": "ssh"}}})


def test_unknown_connection_rejected() -> None:
    with pytest.raises(ValueError, match="unknown connection"):
        InventoryLoader().parse({"hosts": {"a": {"connection": "winrm", "address": "x"}}})


def test_invalid_credential_rejected() -> None:
    with pytest.raises(ValueError, match="credential"):
        InventoryLoader().parse({"hosts": {"a": {"address": "x", "credential": {"token": "t"}}}})


def test_plan_and_template_dirs_attached(tmp_path: Path) -> None:
    plan_path = write_plan(
        tmp_path,
        """
        [[tasks]]
        name = "demo"

          [[tasks.actions]]
          type = "file"
          path = "/tmp/demo"
          template = "templates/file.tmpl"
        """,
    )

    plan = InventoryLoader(template_dir=Path("/srv/templates")).load(plan_path)

    action = plan.tasks[0].actions[0]
    assert action.data["_plan_dir"] == str(tmp_path)
    assert action.data["_template_dir"] == "/srv/templates"


def test_malformed_toml_reports_path(tmp_path: Path) -> None:
    plan_path = write_plan(tmp_path, "[[tasks]\nname = ")

    with pytest.raises(ValueError) as excinfo:
        InventoryLoader().load(plan_path)

    assert str(plan_path) in str(excinfo.value)


def test_missing_plan_file(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="not found"):
        InventoryLoader().load(tmp_path / "nope.toml")


def test_tasks_must_be_tables(tmp_path: Path) -> None:
    plan_path = write_plan(tmp_path, 'tasks = ["x"]')

    with pytest.raises(ValueError, match="Task 1 must be a table") as excinfo:
        InventoryLoader().load(plan_path)

    assert str(plan_path) in str(excinfo.value)


@pytest.mark.parametrize(
    "data, message",
    [
        ({"tasks": {"name": "x"}}, "tasks must be an array"),
        ({"hosts": ["web1"]}, "hosts must be a table"),
        ({"groups": "web"}, "groups must be a table"),
        ({"groups": {"web": {"hosts": [], "variables": "x"}}}, "variables must be a table"),
        ({"tasks": [{"name": "x", "actions": "exec"}]}, "actions must be an array"),
        ({"tasks": [{"name": "x", "actions": ["exec"]}]}, "Action 1.1 must be a table"),
        ({"tasks": [{"name": "x", "hosts": [{"web": 1}]}]}, "list of names"),
    ],
)
def test_wrong_container_types_are_rejected(data, message) -> None:
    with pytest.raises(ValueError, match=message):
        InventoryLoader().parse(data)


def test_non_utf8_plan_file(tmp_path: Path) -> None:
    plan_path = tmp_path / "plan.toml"
    plan_path.write_bytes(b'[[tasks]]\nname = "\xff\xfe"\n')

    with pytest.raises(ValueError, match="not valid UTF-8"):
        InventoryLoader().load(plan_path)
