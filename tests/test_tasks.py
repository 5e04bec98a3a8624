"""Tests for task plans, the task document and project directories."""

import json
import tempfile
from pathlib import Path

import pytest

from conftest import plan_dict, task_dict
from pm_orchestrator.core import projects as projects_mod
from pm_orchestrator.core.tasks import PlanError, TaskBook, current_status, extract_json, load_plan
from pm_orchestrator.store.markers import APPROVED, CONFLICT_RETRIES, RUNNING, STUCK, MarkerStore


@pytest.fixture
def tmp():
    with tempfile.TemporaryDirectory() as d:
        yield Path(d)


class TestSlugify:
    def test_basic(self):
        assert projects_mod.slugify("Hello World") == "hello-world"

    def test_special_chars(self):
        assert projects_mod.slugify("Auth: Login & Signup!") == "auth-login-signup"

    def test_truncation(self):
        assert len(projects_mod.slugify("a" * 100)) <= 40

    def test_empty_falls_back(self):
        assert projects_mod.slugify("!!!") == "project"


class TestProjects:
    def test_create_and_get(self, tmp):
        project = projects_mod.create_project(tmp, "A todo app with auth")
        assert project.name.startswith("a-todo-app-with-auth_")
        assert project.status == "active"
        paths = projects_mod.project_paths(tmp, project.name)
        assert paths.workspace.is_dir()
        assert paths.messages_dir.is_dir()
        assert projects_mod.get_project(tmp, project.name).description == "A todo app with auth"

    def test_name_collision_gets_suffix(self, tmp):
        p1 = projects_mod.create_project(tmp, "same", title="same")
        p2 = projects_mod.create_project(tmp, "same", title="same")
        assert p1.name != p2.name

    def test_set_status(self, tmp):
        project = projects_mod.create_project(tmp, "status test")
        updated = projects_mod.set_project_status(tmp, project.name, "completed")
        assert updated.status == "completed"
        assert projects_mod.get_project(tmp, project.name).status == "completed"

    def test_set_invalid_status(self, tmp):
        project = projects_mod.create_project(tmp, "status test")
        with pytest.raises(ValueError, match="Invalid project status"):
            projects_mod.set_project_status(tmp, project.name, "archived")

    def test_list_empty_runtime(self, tmp):
        assert projects_mod.list_projects(tmp) == []
        assert projects_mod.latest_project(tmp) is None


class TestExtractJson:
    def test_plain(self):
        assert extract_json('{"a": 1}') == {"a": 1}

    def test_fenced_block(self):
        text = 'Here is the plan:\n```json\n{"a": {"b": 2}}\n```\nThanks'
        assert extract_json(text) == {"a": {"b": 2}}

    def test_embedded_with_braces_in_strings(self):
        text = 'Sure! {"reason": "use {braces} carefully", "ok": true} done'
        assert extract_json(text) == {"reason": "use {braces} carefully", "ok": True}

    def test_no_json(self):
        assert extract_json("no json here") is None
        assert extract_json("") is None


class TestLoadPlan:
    def test_valid_plan(self):
        plan = load_plan(plan_dict(task_dict("a"), task_dict("b", ["a"])))
        assert plan.project_name == "demo"
        assert [t.id for t in plan.tasks] == ["a", "b"]
        assert plan.get("b").depends_on == ["a"]

    def test_plan_from_model_output(self):
        text = "I'll plan this.\n```json\n" + json.dumps(plan_dict(task_dict("a"))) + "\n```"
        assert load_plan(text).tasks[0].branch == "task/a"

    def test_missing_field(self):
        task = task_dict("a")
        del task["depends_on"]
        with pytest.raises(PlanError, match="missing fields: depends_on"):
            load_plan(plan_dict(task))

    def test_unknown_type(self):
        with pytest.raises(PlanError, match="unknown type"):
            load_plan(plan_dict(task_dict("a", type="deploy")))

    def test_duplicate_ids(self):
        with pytest.raises(PlanError, match="Duplicate task id"):
            load_plan(plan_dict(task_dict("a"), task_dict("a")))

    @pytest.mark.parametrize("task_id", ["api/models", "../escape", "two words", ".hidden"])
    def test_task_id_must_be_a_file_name(self, task_id):
        with pytest.raises(PlanError, match="may only contain"):
            load_plan(plan_dict(task_dict(task_id)))

    def test_depends_on_must_be_list(self):
        with pytest.raises(PlanError, match="must be a list"):
            load_plan(plan_dict(task_dict("a", depends_on="b")))

    def test_empty_tasks(self):
        with pytest.raises(PlanError, match="non-empty"):
            load_plan({"project_name": "x", "tasks": []})

    def test_not_json(self):
        with pytest.raises(PlanError, match="not valid JSON"):
            load_plan("I could not make a plan")

    def test_unknown_dependency_is_left_to_scheduler(self):
        plan = load_plan(plan_dict(task_dict("a", ["ghost"])))
        assert plan.tasks[0].depends_on == ["ghost"]


class TestTaskBook:
    def test_save_and_load(self, tmp):
        book = TaskBook(tmp / "tasks.json")
        assert not book.exists()
        book.save_plan(load_plan(plan_dict(task_dict("a"))))
        assert book.exists()
        assert book.get("a").description == "Do a"
        assert book.get("zzz") is None

    def test_load_without_plan(self, tmp):
        with pytest.raises(PlanError):
            TaskBook(tmp / "tasks.json").load()

    def test_set_status_round_trips(self, tmp):
        book = TaskBook(tmp / "tasks.json")
        book.save_plan(load_plan(plan_dict(task_dict("a"))))
        task = book.set_status("a", "failed", reason="rejected: no tests")
        assert task.status == "failed"
        assert task.reason == "rejected: no tests"

    def test_set_status_rejects_unknown(self, tmp):
        book = TaskBook(tmp / "tasks.json")
        book.save_plan(load_plan(plan_dict(task_dict("a"))))
        with pytest.raises(ValueError, match="Invalid task status"):
            book.set_status("a", "running")
        with pytest.raises(ValueError, match="Task not found"):
            book.set_status("nope", "failed")


class TestCurrentStatus:
    def test_status_precedence(self, tmp):
        book = TaskBook(tmp / "tasks.json")
        book.save_plan(load_plan(plan_dict(task_dict("a"))))
        markers = MarkerStore(tmp)

        assert current_status(book.get("a"), markers) == "pending"
        markers.write("a", STUCK, {"count": 1})
        assert current_status(book.get("a"), markers) == "stuck"
        markers.write("a", RUNNING)
        assert current_status(book.get("a"), markers) == "running"
        markers.write("a", APPROVED)
        assert current_status(book.get("a"), markers) == "approved"
        markers.write("a", CONFLICT_RETRIES, {"retries": 1, "max": 2})
        assert current_status(book.get("a"), markers) == "conflict-retry"
        book.set_status("a", "failed")
        assert current_status(book.get("a"), markers) == "failed"
