"""
Tests for the planner: ordering, change detection and destroy plans.
"""
import random

import pytest

from stackmap import graph, planner
from stackmap.errors import PlanError
from stackmap.executor import Executor
from stackmap.models.plan import Action
from stackmap.models.resource import Declaration
from stackmap.runtime import MemoryRuntime
from stackmap.secretgen import RandomProvider, ValueGenerator
from stackmap.state import Snapshot, StateStore


def _decl(address, index=0, depends_on=None, **attributes):
    resource_type, _, name = address.partition(".")
    return Declaration(
        resource_type=resource_type,
        name=name,
        attributes=attributes,
        source_format="yaml",
        depends_on=list(depends_on or []),
        index=index,
    )


def _stack(image="nginx:1.27", restart="unless-stopped", volume_name="app-data", password_length=24):
    return [
        _decl("docker_volume.data", 0, name=volume_name),
        _decl("random_password.db", 1, length=password_length, special=False),
        _decl("docker_image.app", 2, name=image),
        _decl("docker_container.app", 3,
              name="app",
              image="${docker_image.app.image_id}",
              restart=restart,
              env=["DB_PASSWORD=${random_password.db.result}"],
              volumes=[{"volume_name": "${docker_volume.data.name}", "container_path": "/data"}]),
    ]


def _apply(store, declarations):
    built = graph.build(declarations)
    result = planner.plan(built, store.snapshot())
    run = Executor(store, [RandomProvider(ValueGenerator()), MemoryRuntime()], backoff_base=0).run(result, built)
    assert run.ok
    return built


def _assert_respects_edges(result, built):
    order = result.order()
    for dep, dependent in built.graph.edges:
        before = next(i for i, s in enumerate(order) if s.endswith(":" + dep))
        after = next(i for i, s in enumerate(order) if s.endswith(":" + dependent))
        assert before < after, f"{dep} planned after {dependent}"


class TestCreatePlans:
    def test_everything_created_on_empty_state(self):
        built = graph.build(_stack())
        result = planner.plan(built, Snapshot())
        assert sorted(result.creates) == sorted(d.address for d in _stack())
        assert result.counts() == {"create": 4, "update": 0, "replace": 0, "delete": 0}

    def test_secret_created_before_consumer(self):
        built = graph.build(_stack())
        result = planner.plan(built, Snapshot())
        assert result.position(Action.CREATE, "random_password.db") < result.position(
            Action.CREATE, "docker_container.app"
        )

    def test_ties_follow_declaration_order(self):
        built = graph.build([
            _decl("docker_volume.b", 0, name="b"),
            _decl("docker_volume.a", 1, name="a"),
            _decl("docker_volume.c", 2, name="c"),
        ])
        result = planner.plan(built, Snapshot())
        assert result.order() == ["create:docker_volume.b", "create:docker_volume.a", "create:docker_volume.c"]

    @pytest.mark.parametrize("seed", range(10))
    def test_random_graphs_are_planned_in_dependency_order(self, seed):
        rng = random.Random(seed)
        names = [f"c{i}" for i in range(12)]
        declarations = []
        for i, name in enumerate(names):
            deps = [n for n in names[:i] if rng.random() < 0.3]
            env = [f"PEER_{n.upper()}=${{docker_container.{n}.name}}" for n in deps]
            declarations.append(_decl(f"docker_container.{name}", image="busybox", env=env))
        rng.shuffle(declarations)
        for index, decl in enumerate(declarations):
            decl.index = index

        built = graph.build(declarations)
        result = planner.plan(built, Snapshot())
        assert len(result.steps) == len(names)
        _assert_respects_edges(result, built)


class TestChangePlans:
    def test_no_changes_after_apply(self, tmp_path):
        store = StateStore(str(tmp_path / "state.json"))
        built = _apply(store, _stack())
        result = planner.plan(built, store.snapshot())
        assert result.is_empty

    def test_mutable_attribute_updated_in_place(self, tmp_path):
        store = StateStore(str(tmp_path / "state.json"))
        _apply(store, _stack())
        result = planner.plan(graph.build(_stack(restart="always")), store.snapshot())
        assert result.updates == ["docker_container.app"]
        assert result.steps[0].changed == ["restart"]
        assert result.replacements == []

    def test_immutable_attribute_replaced(self, tmp_path):
        store = StateStore(str(tmp_path / "state.json"))
        _apply(store, _stack())
        result = planner.plan(graph.build(_stack(image="nginx:1.28")), store.snapshot())
        assert result.replacements == ["docker_image.app", "docker_container.app"]
        assert result.counts()["replace"] == 2
        assert result.counts()["delete"] == 0

    def test_mutable_table_is_configurable(self, tmp_path):
        store = StateStore(str(tmp_path / "state.json"))
        _apply(store, _stack())
        result = planner.plan(
            graph.build(_stack(restart="always")), store.snapshot(), {"docker_container": []},
        )
        assert result.replacements == ["docker_container.app"]

    def test_replace_ordering(self, tmp_path):
        store = StateStore(str(tmp_path / "state.json"))
        _apply(store, _stack())
        result = planner.plan(graph.build(_stack(volume_name="app-data-v2")), store.snapshot())

        pos = result.position
        assert pos(Action.DELETE, "docker_container.app") < pos(Action.DELETE, "docker_volume.data")
        assert pos(Action.DELETE, "docker_volume.data") < pos(Action.CREATE, "docker_volume.data")
        assert pos(Action.CREATE, "docker_volume.data") < pos(Action.CREATE, "docker_container.app")

    def test_replaced_secret_propagates_to_consumer(self, tmp_path):
        store = StateStore(str(tmp_path / "state.json"))
        _apply(store, _stack())
        result = planner.plan(graph.build(_stack(password_length=40)), store.snapshot())

        assert set(result.replacements) == {"random_password.db", "docker_container.app"}
        container = next(s for s in result.steps if s.address == "docker_container.app")
        assert "env" in container.changed
        assert "random_password.db is replaced" in container.reason

    def test_explicit_dependency_does_not_propagate(self, tmp_path):
        store = StateStore(str(tmp_path / "state.json"))
        declarations = [
            _decl("docker_volume.data", 0, name="data"),
            _decl("docker_container.app", 1, image="nginx", depends_on=["docker_volume.data"]),
        ]
        _apply(store, declarations)
        changed = [
            _decl("docker_volume.data", 0, name="data-v2"),
            _decl("docker_container.app", 1, image="nginx", depends_on=["docker_volume.data"]),
        ]
        result = planner.plan(graph.build(changed), store.snapshot())
        assert {s.address for s in result.steps} == {"docker_volume.data"}

    def test_undeclared_resource_deleted_dependents_first(self, tmp_path):
        store = StateStore(str(tmp_path / "state.json"))
        _apply(store, _stack())
        remaining = [d for d in _stack() if d.resource_type not in ("docker_container",)]
        remaining = [d for d in remaining if d.address != "docker_volume.data"]
        result = planner.plan(graph.build(remaining), store.snapshot())

        assert set(result.deletes) == {"docker_container.app", "docker_volume.data"}
        assert result.position(Action.DELETE, "docker_container.app") < result.position(
            Action.DELETE, "docker_volume.data"
        )

    def test_deletes_come_first_when_unordered(self, tmp_path):
        store = StateStore(str(tmp_path / "state.json"))
        _apply(store, [_decl("docker_volume.old", 0, name="old")])
        result = planner.plan(graph.build([_decl("docker_volume.new", 0, name="new")]), store.snapshot())
        assert result.order() == ["delete:docker_volume.old", "create:docker_volume.new"]

    def test_new_explicit_dependency_refreshes_state(self, tmp_path):
        store = StateStore(str(tmp_path / "state.json"))
        _apply(store, [
            _decl("docker_volume.data", 0, name="data"),
            _decl("docker_container.app", 1, image="nginx"),
        ])
        result = planner.plan(graph.build([
            _decl("docker_volume.data", 0, name="data"),
            _decl("docker_container.app", 1, image="nginx", depends_on=["docker_volume.data"]),
        ]), store.snapshot())
        assert result.steps == []
        assert result.refresh == ["docker_container.app"]
        assert not result.is_empty

    def test_swapped_dependency_has_no_valid_order(self, tmp_path):
        store = StateStore(str(tmp_path / "state.json"))
        _apply(store, [
            _decl("docker_container.b", 0, name="b", image="nginx"),
            _decl("docker_container.a", 1, name="a", image="nginx", env=["PEER=${docker_container.b.name}"]),
        ])
        swapped = graph.build([
            _decl("docker_container.a", 0, name="a", image="nginx"),
            _decl("docker_container.b", 1, name="b", image="nginx", env=["PEER=${docker_container.a.name}"]),
        ])
        with pytest.raises(PlanError):
            planner.plan(swapped, store.snapshot())


class TestDestroyPlans:
    def _applied(self, tmp_path):
        store = StateStore(str(tmp_path / "state.json"))
        _apply(store, [
            _decl("docker_volume.x", 0, name="x"),
            _decl("docker_container.y", 1, image="nginx",
                  volumes=[{"volume_name": "${docker_volume.x.name}", "container_path": "/x"}]),
            _decl("docker_network.z", 2, name="z"),
        ])
        return store

    def test_destroy_everything_reverse_declaration_order(self, tmp_path):
        store = self._applied(tmp_path)
        result = planner.plan_destroy(store.snapshot())
        assert result.destroy
        assert result.order() == [
            "delete:docker_network.z",
            "delete:docker_container.y",
            "delete:docker_volume.x",
        ]

    def test_destroy_uses_recorded_index_not_write_order(self):
        # "a" was written to state first but declared after "b"
        snapshot = Snapshot({"version": 1, "serial": 2, "resources": {
            "docker_volume.a": {"index": 1, "attributes": {"name": "a"}, "dependencies": []},
            "docker_volume.b": {"index": 0, "attributes": {"name": "b"}, "dependencies": []},
        }})
        assert list(snapshot) == ["docker_volume.b", "docker_volume.a"]
        assert planner.plan_destroy(snapshot).order() == ["delete:docker_volume.a", "delete:docker_volume.b"]

    def test_target_takes_dependents_along(self, tmp_path):
        store = self._applied(tmp_path)
        result = planner.plan_destroy(store.snapshot(), ["docker_volume.x"])
        assert result.order() == ["delete:docker_container.y", "delete:docker_volume.x"]
        assert ("delete:docker_container.y", "delete:docker_volume.x") in result.edges

    def test_unknown_target(self, tmp_path):
        store = self._applied(tmp_path)
        with pytest.raises(PlanError):
            planner.plan_destroy(store.snapshot(), ["docker_volume.nope"])

    def test_empty_state(self):
        assert planner.plan_destroy(Snapshot()).is_empty


class TestDiffAttributes:
    def test_changed_and_removed_keys(self):
        before = {"name": "a", "restart": "no", "labels": {"x": "1"}}
        after = {"name": "a", "restart": "always"}
        assert planner.diff_attributes(before, after) == ["restart", "labels"]

    def test_tuples_compare_equal_to_lists(self):
        assert planner.diff_attributes({"command": ["a", "b"]}, {"command": ("a", "b")}) == []
