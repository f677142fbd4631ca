"""Tests for ops, histories and their JSON-lines encoding."""

import threading

import pytest
from hypothesis import given
from hypothesis import strategies as st

from carly.common import Op, OpType
from carly.errors import HistoryError
from carly.history import History, format_history, is_client_process, pair_ops, to_jsonable


def invoke(process, f="add", value=None, time=0):
    return Op(process, OpType.INVOKE, f, value, time=time)


class TestOp:
    def test_completions_keep_the_invoked_value(self):
        op = invoke(0, value=3)
        assert op.ok().value == 3
        assert op.fail("nope").value == 3
        assert op.info("timed-out").value == 3

    def test_completion_can_replace_the_value(self):
        op = invoke(0, "read")
        done = op.ok({1, 2})
        assert done.type is OpType.OK
        assert done.value == {1, 2}
        assert op.value is None

    def test_completions_are_new_records(self):
        op = invoke(0, value=1)
        op.index = 7
        done = op.fail("unavailable")
        assert done is not op
        assert done.index == -1
        assert done.error == "unavailable"
        assert op.type is OpType.INVOKE

    def test_dict_round_trip(self):
        op = Op("nemesis", OpType.INFO, "start", "cut", time=5, error=None, index=3)
        assert Op.from_dict(op.to_dict()) == op


class TestHistory:
    def test_append_assigns_indexes(self):
        h = History()
        a = h.append(invoke(0))
        b = h.append(a.ok())
        assert (a.index, b.index) == (0, 1)
        assert len(h) == 2
        assert h[1] is b

    def test_frozen_history_rejects_appends(self):
        h = History([invoke(0)]).freeze()
        assert h.frozen
        with pytest.raises(HistoryError):
            h.append(invoke(1))

    def test_concurrent_appends_keep_every_op(self):
        h = History()

        def worker(process):
            for i in range(200):
                op = h.append(invoke(process, value=i))
                h.append(op.ok())

        threads = [threading.Thread(target=worker, args=(p,)) for p in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(h) == 1600
        assert [op.index for op in h] == list(range(1600))
        assert h.validate() == []

    def test_pairs_in_invocation_order(self):
        h = History()
        a = h.append(invoke(0, value=1))
        b = h.append(invoke(1, value=2))
        h.append(b.ok())
        pairs = h.pairs()
        assert [inv.value for inv, _ in pairs] == [1, 2]
        assert pairs[0][1] is None
        assert pairs[1][1].is_ok
        assert a.index == 0

    def test_pair_ops_rejects_orphan_completions(self):
        with pytest.raises(HistoryError):
            pair_ops([Op(0, OpType.OK, "add", 1)])

    def test_validate_reports_overlapping_invokes(self):
        h = History([invoke(0, value=1), invoke(0, value=2)])
        problems = h.validate()
        assert len(problems) == 1
        assert "still pending" in problems[0]

    def test_validate_reports_mismatched_completion(self):
        h = History([invoke(0, "add"), Op(0, OpType.OK, "read")])
        assert "does not match" in h.validate()[0]

    def test_validate_reports_time_going_backwards(self):
        h = History([invoke(0, time=10), Op(0, OpType.OK, "add", time=5)])
        assert "earlier" in h.validate()[0]

    def test_by_process_and_client_ops(self):
        h = History([invoke(0), invoke("nemesis", "start"), invoke(1)])
        assert h.processes() == [0, "nemesis", 1]
        assert set(h.by_process()) == {0, 1, "nemesis"}
        assert [op.process for op in h.client_ops()] == [0, 1]

    def test_completions_filter(self):
        h = History()
        a = h.append(invoke(0, "add", 1))
        h.append(a.ok())
        r = h.append(invoke(1, "read"))
        h.append(r.fail("unavailable"))
        assert [op.f for op in h.completions()] == ["add", "read"]
        assert [op.f for op in h.completions(op_type=OpType.FAIL)] == ["read"]
        assert h.completions(f="add", op_type=OpType.FAIL) == []


def test_is_client_process():
    assert is_client_process(0)
    assert is_client_process(12)
    assert not is_client_process("nemesis")
    assert not is_client_process(True)


values = st.recursive(
    st.none() | st.booleans() | st.integers() | st.text(max_size=5),
    lambda inner: st.lists(inner, max_size=3)
    | st.frozensets(st.integers(), max_size=4)
    | st.tuples(inner, inner)
    | st.dictionaries(st.text(max_size=3), inner, max_size=3)
    | st.dictionaries(st.integers() | st.sampled_from(["#set", "#tuple", "#dict"]), inner, max_size=3),
    max_leaves=8,
)

op_records = st.builds(
    Op,
    process=st.integers(0, 5) | st.sampled_from(["nemesis", "bootstrapper"]),
    type=st.sampled_from(list(OpType)),
    f=st.sampled_from(["add", "read", "start", "stop"]),
    value=values,
    time=st.integers(0, 10**12),
    error=st.none() | st.sampled_from(["timed-out", "unavailable"]),
)


@given(st.lists(op_records, max_size=20))
def test_jsonl_round_trip(ops):
    h = History(ops)
    decoded = History.loads(h.dumps())
    assert list(decoded) == list(h)
    assert decoded.frozen


def test_sets_decode_as_sets(tmp_path):
    h = History([Op(0, OpType.OK, "read", {3, 1, 2})])
    path = h.write(tmp_path / "history.jsonl")
    assert '{"#set": [1, 2, 3]}' in path.read_text()
    assert History.read(path)[0].value == {1, 2, 3}


def test_dicts_keep_their_keys():
    values = [{1: "a", 2: {3: "b"}}, {"#set": [1, 2]}, {"#dict": [], "x": 1}, {(1, 2): frozenset({3})}]
    h = History([Op(0, OpType.INVOKE, "write", v) for v in values])
    decoded = History.loads(h.dumps())
    assert [op.value for op in decoded] == values
    assert isinstance(decoded[1].value, dict)


def test_loads_reports_the_bad_line():
    good = History([invoke(0)]).dumps()
    with pytest.raises(HistoryError, match="line 2"):
        History.loads(good + "{not json}\n")


def test_to_jsonable():
    op = Op(0, OpType.OK, "read", 1)
    assert to_jsonable({"lost": {2, 1}, "pair": (1, 2), "op": op}) == {
        "lost": [1, 2],
        "pair": [1, 2],
        "op": op.to_dict(),
    }


def test_format_history():
    h = History([invoke(0, value=1, time=1_500_000_000), Op(0, OpType.FAIL, "add", 1, time=2_000_000_000, error="nope")])
    text = format_history(h)
    lines = text.splitlines()
    assert len(lines) == 2
    assert "1.500" in lines[0]
    assert "invoke" in lines[0]
    assert "fail" in lines[1] and "; nope" in lines[1]
    assert format_history([]) == "(empty history)\n"
    assert len(format_history(h, limit=1).splitlines()) == 1
