# tests/test_specification_loader.py
import json

import pytest

from conftest import make_spec, task, terminal
from evidence_runner.specification_loader import normalize_criteria
from evidence_runner.types import Phase, SchemaValidationError


def test_load_builds_frozen_model(tmp_path, loader):
    document = make_spec(
        {
            "API-1": task(
                [terminal("STEP.1", "echo ok")],
                criteria=[{"condition": "STEP.1.exitCode === 0"}],
                prerequisites=[terminal("PREREQ.1", "true")],
                cleanup=[terminal("CLEANUP.1", "true")],
                title="API works",
            )
        },
        globalConfiguration={"timeout": 5000},
    )
    path = tmp_path / "spec.json"
    path.write_text(json.dumps(document), encoding="utf-8")

    spec = loader.load(path)

    assert spec.schema_version == "2.0.0"
    assert spec.title == "test run"
    assert spec.source_path == str(path)
    assert spec.global_configuration["timeout"] == 5000
    assert spec.global_configuration["workspaceRoot"] == str(tmp_path.resolve())

    api = spec.tasks["API-1"]
    assert api.title == "API works"
    assert [a.action_id for a in api.prerequisites] == ["PREREQ.1"]
    assert [a.action_id for a in api.steps] == ["STEP.1"]
    assert [a.action_id for a in api.cleanup] == ["CLEANUP.1"]
    assert [phase for phase, _ in api.phases()] == [Phase.PREREQ, Phase.STEP, Phase.CLEANUP]

    with pytest.raises(AttributeError):
        api.title = "changed"


def test_task_order_follows_document(loader):
    document = make_spec({
        "B": task([terminal("STEP.1", "true")]),
        "A": task([terminal("STEP.1", "true")]),
        "C": task([terminal("STEP.1", "true")]),
    })
    assert list(loader.parse(document).tasks) == ["B", "A", "C"]


@pytest.mark.parametrize("document, fragment", [
    ({"tasks": {"T": task([terminal("STEP.1", "true")])}}, "schemaVersion"),
    (make_spec({}), "tasks"),
    ({"schemaVersion": "9.9.9", "tasks": {"T": task([terminal("STEP.1", "true")])}}, "9.9.9"),
    (make_spec({"T": {"testExecution": {"steps": []}}}), "validationCriteria"),
    (make_spec({"T": task([{"type": "TERMINAL_COMMAND"}])}), "actionId"),
    (make_spec({"T": task([terminal("STEP.1", "true")], criteria=[{"description": "no form"}])}), "validationCriteria"),
])
def test_schema_violations_are_fatal(loader, document, fragment):
    with pytest.raises(SchemaValidationError) as exc:
        loader.parse(document)
    assert exc.value.errors
    assert any(fragment in e for e in exc.value.errors)


def test_duplicate_action_ids_within_a_task_rejected(loader):
    document = make_spec({
        "T": task(
            [terminal("STEP.1", "true"), terminal("STEP.1", "false")],
        )
    })
    with pytest.raises(SchemaValidationError) as exc:
        loader.parse(document)
    assert "duplicate actionId 'STEP.1'" in str(exc.value)


def test_duplicate_across_phases_rejected(loader):
    document = make_spec({
        "T": task([terminal("X", "true")], prerequisites=[terminal("X", "true")])
    })
    with pytest.raises(SchemaValidationError, match="duplicate actionId 'X'"):
        loader.parse(document)


def test_same_action_id_in_different_tasks_is_fine(loader):
    document = make_spec({
        "A": task([terminal("STEP.1", "true")]),
        "B": task([terminal("STEP.1", "true")]),
    })
    assert set(loader.parse(document).tasks) == {"A", "B"}


def test_missing_file_and_bad_json(tmp_path, loader):
    with pytest.raises(SchemaValidationError, match="Cannot read"):
        loader.load(tmp_path / "nope.json")

    broken = tmp_path / "broken.json"
    broken.write_text("{not json", encoding="utf-8")
    with pytest.raises(SchemaValidationError, match="not valid JSON"):
        loader.load(broken)


def test_env_placeholders_substituted(loader):
    document = make_spec({
        "T": task([{
            "actionId": "STEP.1",
            "type": "HTTP_REQUEST",
            "parameters": {"url": "http://${API_HOST}/users", "headers": {"X-Unset": "${NOT_SET}"}},
        }])
    })
    action = loader.parse(document).tasks["T"].steps[0]
    assert action.parameters["url"] == "http://localhost:8080/users"
    assert action.parameters["headers"]["X-Unset"] == "${NOT_SET}"


def test_action_fields_mapped(loader):
    document = make_spec({
        "T": task([{
            "actionId": "STEP.1",
            "type": "TERMINAL_COMMAND",
            "description": "build",
            "parameters": {"command": "make"},
            "timeout": 1500,
            "continueOnFailure": True,
        }])
    })
    action = loader.parse(document).tasks["T"].steps[0]
    assert action.timeout_ms == 1500
    assert action.continue_on_failure is True
    assert action.descriptor()["description"] == "build"


def test_success_and_failure_conditions_normalized(loader):
    document = make_spec({
        "T": task([terminal("STEP.1", "true")], criteria={
            "successConditions": [{"condition": "STEP.1.exitCode === 0"}],
            "failureConditions": [{"field": "STEP.1.stderr", "operator": "contains", "value": "panic"}],
        })
    })
    criteria = loader.parse(document).tasks["T"].validation_criteria
    assert len(criteria) == 2
    assert "negate" not in criteria[0]
    assert criteria[1]["negate"] is True


def test_normalize_list_is_copied():
    original = [{"condition": "true"}]
    normalized = normalize_criteria(original)
    normalized[0]["negate"] = True
    assert "negate" not in original[0]
