"""Tests for the workflow-builder command line."""

import json
import os
from unittest.mock import patch

import pytest

from workflow_builder.cli import build_parser, main

_DOC = {
    "name": "Daily digest",
    "nodes": [
        {"id": "t1", "kind": "trigger.schedule", "config": {"cron": "0 9 * * *"}},
        {"id": "a1", "kind": "action.notify", "config": {"destination": "ops"}},
    ],
    "edges": [{"id": "e1", "source": "t1", "target": "a1"}],
}


@pytest.fixture(autouse=True)
def _clean_env():
    with patch.dict(os.environ, {"PLANNER_ENGINE": "rules"}, clear=True):
        yield


def _write(path, data) -> str:
    path.write_text(json.dumps(data), encoding="utf-8")
    return str(path)


def _run(argv: list[str]) -> int:
    with pytest.raises(SystemExit) as exc:
        main(argv)
    return exc.value.code


class TestValidate:
    def test_valid_document(self, tmp_path, capsys):
        assert _run(["validate", _write(tmp_path / "flow.json", _DOC)]) == 0
        assert "OK: 2 nodes, 1 edges" in capsys.readouterr().out

    def test_invalid_document_exits_1(self, tmp_path, capsys):
        doc = {**_DOC, "edges": []}
        assert _run(["validate", _write(tmp_path / "flow.json", doc)]) == 1
        out = capsys.readouterr().out
        assert "ISSUE    no reachable action" in out
        assert "WARNING  orphaned node: 'a1'" in out

    def test_missing_file_exits_2(self, tmp_path, capsys):
        assert _run(["validate", str(tmp_path / "missing.json")]) == 2
        assert "cannot read workflow" in capsys.readouterr().err

    def test_non_object_document(self, tmp_path):
        assert _run(["validate", _write(tmp_path / "flow.json", [1, 2])]) == 2

    @pytest.mark.parametrize("command", ["validate", "summarize"])
    def test_malformed_nodes_exit_2(self, tmp_path, capsys, command):
        assert _run([command, _write(tmp_path / "flow.json", {"nodes": ["oops"]})]) == 2
        assert "nodes[0] must be an object" in capsys.readouterr().err

    def test_apply_on_malformed_document_exits_2(self, tmp_path, capsys):
        flow = _write(tmp_path / "flow.json", {"nodes": "abc"})
        patch_file = _write(tmp_path / "patch.json", {"op": "SET_NAME", "name": "x"})

        assert _run(["apply", flow, patch_file]) == 2
        assert "not a valid workflow document" in capsys.readouterr().err


class TestApply:
    def test_writes_result(self, tmp_path):
        flow = _write(tmp_path / "flow.json", _DOC)
        patch_file = _write(tmp_path / "patch.json", [
            {"op": "UPDATE_NODE", "id": "a1", "data": {"config": {"destination": "sales"}}},
            {"op": "SET_NAME", "name": "Sales digest"},
        ])
        out = tmp_path / "out.json"

        assert _run(["apply", flow, patch_file, "-o", str(out)]) == 0

        result = json.loads(out.read_text(encoding="utf-8"))
        assert result["name"] == "Sales digest"
        assert result["nodes"][1]["label"] == "Notify - sales"

    def test_structural_failure_exits_1(self, tmp_path, capsys):
        flow = _write(tmp_path / "flow.json", _DOC)
        patch_file = _write(tmp_path / "patch.json", {"op": "REMOVE_NODE", "id": "ghost"})

        assert _run(["apply", flow, patch_file]) == 1
        assert "REMOVE_NODE: node 'ghost' does not exist" in capsys.readouterr().err

    def test_malformed_patch_exits_2(self, tmp_path, capsys):
        flow = _write(tmp_path / "flow.json", _DOC)
        patch_file = _write(tmp_path / "patch.json", {"op": "EXPLODE"})

        assert _run(["apply", flow, patch_file]) == 2
        assert "malformed patch" in capsys.readouterr().err

    def test_rejected_document_exits_2(self, tmp_path, capsys):
        doc = {**_DOC, "edges": [{"id": "e9", "source": "ghost", "target": "a1"}]}
        flow = _write(tmp_path / "flow.json", doc)
        patch_file = _write(tmp_path / "patch.json", {"op": "SET_NAME", "name": "x"})

        assert _run(["apply", flow, patch_file]) == 2
        assert "was rejected" in capsys.readouterr().err


class TestSummarizeAndPlan:
    def test_summarize(self, tmp_path, capsys):
        assert _run(["summarize", _write(tmp_path / "flow.json", _DOC)]) == 0
        assert capsys.readouterr().out.startswith("Name: Daily digest\n")

    def test_plan_prints_patch(self, tmp_path, capsys):
        flow = _write(tmp_path / "flow.json", _DOC)

        assert _run(["plan", flow, "rename it to Morning digest", "--rule-based"]) == 0

        captured = capsys.readouterr()
        assert json.loads(captured.out) == {"op": "SET_NAME", "name": "Morning digest"}
        assert "Status: committed (planner: rules)" in captured.err

    def test_plan_commits_with_output(self, tmp_path):
        flow = _write(tmp_path / "flow.json", _DOC)
        out = tmp_path / "out.json"

        assert _run(["plan", flow, "remove the notify step", "-o", str(out)]) == 0
        assert [n["id"] for n in json.loads(out.read_text(encoding="utf-8"))["nodes"]] == ["t1"]

    def test_plan_without_patch(self, tmp_path, capsys):
        flow = _write(tmp_path / "flow.json", _DOC)
        assert _run(["plan", flow, "thanks", "--rule-based"]) == 0
        assert "Status: no_patch" in capsys.readouterr().err


class TestParser:
    def test_no_command_prints_help(self, capsys):
        assert _run([]) == 1
        assert "workflow-builder" in capsys.readouterr().out

    def test_serve_defaults(self):
        args = build_parser().parse_args(["serve"])
        assert (args.host, args.port, args.reload) == ("0.0.0.0", 8000, False)

    def test_serve_dispatches_to_api(self):
        with patch("workflow_builder.api.serve") as mock_serve:
            assert _run(["serve", "--port", "9000"]) == 0
        mock_serve.assert_called_once_with(host="0.0.0.0", port=9000, reload=False)
