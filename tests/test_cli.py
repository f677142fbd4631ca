"""Tests for the carly command line."""

import json

import pytest

from carly import __version__, cli
from carly.batch import TESTS
from carly.cli import INTERRUPTED, USAGE_ERROR, main
from carly.common import Op, OpType
from carly.errors import RunAborted
from carly.history import History


def write_history(path, *pairs):
    history = History()
    for process, f, value, outcome, result in pairs:
        inv = history.append(Op(process, OpType.INVOKE, f, value))
        if outcome == "ok":
            history.append(inv.ok(result))
        elif outcome == "fail":
            history.append(inv.fail("unavailable"))
        elif outcome == "info":
            history.append(inv.info("timed-out"))
    return history.write(path)


def test_list(capsys):
    assert main(["list"]) == 0
    assert capsys.readouterr().out.splitlines() == list(TESTS)


def test_version(capsys):
    assert main(["--version"]) == 0
    assert __version__ in capsys.readouterr().out


def test_usage_errors():
    assert main([]) == USAGE_ERROR
    assert main(["explode"]) == USAGE_ERROR
    assert main(["check", "h.jsonl", "--model", "queue"]) == USAGE_ERROR


def test_run_unknown_test(capsys):
    assert main(["run", "no such test"]) == USAGE_ERROR
    assert "no test named" in capsys.readouterr().err


def test_run_interrupted(monkeypatch, capsys):
    partial = History([Op(0, OpType.INVOKE, "add", 1), Op(0, OpType.INFO, "add", 1, error="interrupted")])

    def interrupted(test, **kwargs):
        raise RunAborted("interrupted", partial.freeze())

    monkeypatch.setattr(cli, "run", interrupted)
    assert main(["run", "sanity check"]) == INTERRUPTED
    assert "run aborted: interrupted; 2 ops recorded" in capsys.readouterr().err


def test_run(tmp_path, capsys):
    code = main(["run", "sanity check", "--node", "n1,n2", "--time-limit", "0.1", "--store", str(tmp_path)])
    assert code == 0
    out = json.loads(capsys.readouterr().out)
    assert out["valid"] is True
    assert out["store"].startswith(str(tmp_path / "sanity-check"))


class TestCheck:
    def test_valid_set_history(self, tmp_path, capsys):
        path = write_history(
            tmp_path / "history.jsonl",
            (0, "add", 1, "ok", 1),
            (1, "add", 2, "info", None),
            (0, "read", None, "ok", {1, 2}),
        )
        assert main(["check", str(path), "--checker", "set"]) == 0
        results = json.loads(capsys.readouterr().out)
        assert results["valid"] is True
        assert results["set"]["recovered"] == [2]

    def test_lost_add(self, tmp_path, capsys):
        path = write_history(
            tmp_path / "history.jsonl",
            (0, "add", 1, "ok", 1),
            (0, "read", None, "ok", set()),
        )
        assert main(["check", str(path), "--checker", "set"]) == 1
        assert json.loads(capsys.readouterr().out)["set"]["lost"] == [1]

    def test_linearizable_register(self, tmp_path, capsys):
        path = write_history(
            tmp_path / "history.jsonl",
            (0, "write", 1, "ok", 1),
            (0, "write", 2, "ok", 2),
            (1, "read", None, "ok", 1),
        )
        assert main(["check", str(path), "--model", "register"]) == 1
        results = json.loads(capsys.readouterr().out)
        assert results["linearizable"]["valid"] is False
        assert results["well-formed"]["valid"] is True

    def test_run_directory(self, tmp_path, capsys):
        write_history(tmp_path / "history.jsonl", (0, "add", 1, "ok", 1), (0, "read", None, "ok", {1}))
        assert main(["check", str(tmp_path)]) == 0

    @pytest.mark.parametrize("content", [None, "not json\n"])
    def test_unreadable_history(self, tmp_path, capsys, content):
        path = tmp_path / "history.jsonl"
        if content is not None:
            path.write_text(content)
        assert main(["check", str(path)]) == USAGE_ERROR
        assert "cannot read history" in capsys.readouterr().err
