"""Tests for generators and the shared generator context."""

import random
import threading
import time

import pytest

from carly.generator import (
    PENDING,
    Context,
    Fn,
    Once,
    Phases,
    Repeat,
    Void,
    clients,
    coerce,
    conductors,
    cycle,
    delay,
    limit,
    mix,
    on,
    once,
    phases,
    seq,
    sleep,
    stagger,
    time_limit,
)


def drain(gen, ctx, process=0, max_ops=100):
    out = []
    while len(out) < max_ops:
        result = gen.op(None, ctx, process)
        if result is None:
            break
        out.append(result)
    return out


@pytest.fixture
def ctx():
    return Context([0, 1, "nemesis"])


class TestContext:
    def test_clock_is_relative(self):
        c = Context([0], start_ns=time.monotonic_ns())
        assert 0 <= c.now() < 10**9
        assert c.elapsed() < 1

    def test_client_processes_are_integers(self, ctx):
        assert ctx.is_client(0)
        assert not ctx.is_client("nemesis")

    def test_retire_and_replace(self, ctx):
        ctx.retire(1)
        ctx.replace(0, 2)
        assert ctx.live_processes() == frozenset({2, "nemesis"})

    def test_stop_cuts_sleeps_short(self, ctx):
        timer = threading.Timer(0.05, ctx.stop)
        timer.start()
        started = time.monotonic()
        assert ctx.sleep(5) is False
        timer.join()
        assert time.monotonic() - started < 2
        assert ctx.stopped

    def test_progress_marker(self, ctx):
        marker = ctx.progress_marker()
        assert ctx.wait_for_progress(marker, 0.01) is False
        ctx.notify_progress()
        assert ctx.wait_for_progress(marker, 0.01) is True


def test_pending_is_falsy_and_unique():
    assert not PENDING
    assert repr(PENDING) == "PENDING"
    assert type(PENDING)() is PENDING


class TestLeaves:
    def test_void(self, ctx):
        assert Void().op(None, ctx, 0) is None

    def test_once_goes_to_one_process(self, ctx):
        gen = once({"f": "read"})
        assert gen.op(None, ctx, 0) == {"f": "read"}
        assert gen.op(None, ctx, 1) is None
        assert gen.op(None, ctx, 0) is None

    def test_repeat_returns_copies(self, ctx):
        gen = Repeat({"f": "read"})
        first = gen.op(None, ctx, 0)
        first["value"] = 1
        assert gen.op(None, ctx, 0) == {"f": "read"}

    def test_fn_is_exhausted_by_none(self, ctx):
        counter = iter(range(3))
        gen = Fn(lambda: ({"f": "add", "value": v} if (v := next(counter, None)) is not None else None))
        assert [op["value"] for op in drain(gen, ctx)] == [0, 1, 2]

    def test_fn_is_serialized(self, ctx):
        state = {"n": 0}

        def next_value():
            n = state["n"]
            time.sleep(0.0001)
            state["n"] = n + 1
            return {"f": "add", "value": n}

        gen = Fn(next_value)
        results = []
        lock = threading.Lock()

        def worker(process):
            for _ in range(50):
                op = gen.op(None, ctx, process)
                with lock:
                    results.append(op["value"])

        threads = [threading.Thread(target=worker, args=(p,)) for p in (0, 1)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert sorted(results) == list(range(100))


class TestCoerce:
    def test_none_is_void(self):
        assert isinstance(coerce(None), Void)

    def test_dict_repeats(self, ctx):
        gen = coerce({"f": "read"})
        assert drain(gen, ctx, max_ops=3) == [{"f": "read"}] * 3

    def test_callable(self, ctx):
        assert isinstance(coerce(lambda: None), Fn)

    def test_generators_pass_through(self):
        gen = Once({"f": "read"})
        assert coerce(gen) is gen

    def test_rejects_other_values(self):
        with pytest.raises(TypeError):
            coerce(42)


class TestSequences:
    def test_seq_skips_sleeps(self, ctx):
        gen = seq([{"f": "a"}, sleep(0), {"f": "b"}])
        assert drain(gen, ctx) == [{"f": "a"}, {"f": "b"}]

    def test_cycle_repeats(self, ctx):
        gen = cycle([{"f": "start"}, {"f": "stop"}])
        assert [op["f"] for op in drain(gen, ctx, max_ops=5)] == ["start", "stop", "start", "stop", "start"]

    def test_cycle_needs_items(self):
        with pytest.raises(ValueError):
            cycle([])

    def test_seq_stops_when_the_run_stops(self, ctx):
        gen = seq([{"f": "a"}, {"f": "b"}])
        ctx.stop()
        assert gen.op(None, ctx, 0) is None


class TestTiming:
    def test_delay_pauses_before_each_op(self, ctx):
        gen = delay(0.05, Repeat({"f": "add"}))
        started = time.monotonic()
        drain(gen, ctx, max_ops=3)
        assert time.monotonic() - started >= 0.15

    def test_delay_gives_up_when_stopped(self, ctx):
        gen = delay(5, Repeat({"f": "add"}))
        ctx.stop()
        assert gen.op(None, ctx, 0) is None

    def test_stagger_pauses_at_most_twice_the_interval(self, ctx):
        gen = stagger(0.01, Repeat({"f": "add"}))
        started = time.monotonic()
        drain(gen, ctx, max_ops=5)
        assert time.monotonic() - started < 1

    def test_time_limit_stops_after_deadline(self, ctx):
        gen = time_limit(0.1, delay(0.02, Repeat({"f": "add"})))
        started = time.monotonic()
        ops = drain(gen, ctx, max_ops=1000)
        elapsed = time.monotonic() - started
        assert 1 <= len(ops) <= 6
        assert elapsed < 0.5

    def test_time_limit_drops_ops_produced_late(self, ctx):
        gen = time_limit(0.05, delay(0.2, Repeat({"f": "add"})))
        assert gen.op(None, ctx, 0) is None

    def test_limit_counts_across_processes(self, ctx):
        gen = limit(3, Repeat({"f": "add"}))
        assert gen.op(None, ctx, 0) is not None
        assert gen.op(None, ctx, 1) is not None
        assert gen.op(None, ctx, 0) is not None
        assert gen.op(None, ctx, 1) is None

    def test_limit_does_not_count_exhaustion(self, ctx):
        gen = limit(2, seq([{"f": "a"}]))
        assert drain(gen, ctx) == [{"f": "a"}]


class TestRouting:
    def test_clients_exclude_conductors(self, ctx):
        gen = clients(Repeat({"f": "add"}))
        assert gen.op(None, ctx, 0) == {"f": "add"}
        assert gen.op(None, ctx, "nemesis") is None

    def test_on_with_collection_and_predicate(self, ctx):
        assert on({1}, Repeat({"f": "x"})).op(None, ctx, 0) is None
        assert on({1}, Repeat({"f": "x"})).op(None, ctx, 1) == {"f": "x"}
        assert on(lambda p: p == 0, Repeat({"f": "x"})).op(None, ctx, 0) == {"f": "x"}

    def test_conductors_route_by_process(self, ctx):
        gen = conductors({"nemesis": Repeat({"f": "start"})}, Repeat({"f": "add"}))
        assert gen.op(None, ctx, "nemesis") == {"f": "start"}
        assert gen.op(None, ctx, 0) == {"f": "add"}
        assert gen.op(None, ctx, "other") is None

    def test_conductor_routes_without_clients(self, ctx):
        gen = conductors({"nemesis": Repeat({"f": "start"})})
        assert gen.op(None, ctx, 0) is None

    def test_mix_uses_every_generator(self, ctx):
        gen = mix([Repeat({"f": "add"}), Repeat({"f": "read"})])
        gen._rng = random.Random(1)
        fs = {gen.op(None, ctx, 0)["f"] for _ in range(50)}
        assert fs == {"add", "read"}

    def test_mix_skips_exhausted_generators(self, ctx):
        gen = mix([Void(), Once({"f": "read"})])
        assert gen.op(None, ctx, 0) == {"f": "read"}
        assert gen.op(None, ctx, 0) is None


class TestPhases:
    def test_next_phase_waits_for_every_live_process(self, ctx):
        gen = phases(clients(Once({"f": "add"})), clients(Repeat({"f": "read"})))
        assert gen.op(None, ctx, 0) == {"f": "add"}
        # Process 0 has exhausted phase one, but 1 and the conductor have not.
        assert gen.op(None, ctx, 0) is PENDING
        assert gen.op(None, ctx, 1) is PENDING
        assert gen.phase == 0
        # The conductor finishes phase one and is already waiting in phase two.
        assert gen.op(None, ctx, "nemesis") is PENDING
        assert gen.phase == 1
        assert gen.op(None, ctx, 0) == {"f": "read"}

    def test_retired_processes_do_not_hold_the_barrier(self, ctx):
        gen = Phases(Void(), Repeat({"f": "read"}))
        ctx.retire(1)
        ctx.retire("nemesis")
        assert gen.op(None, ctx, 0) == {"f": "read"}

    def test_waiting_processes_do_not_repeat_the_phase(self, ctx):
        calls = []

        def record():
            calls.append(1)

        gen = Phases(Fn(record), Repeat({"f": "read"}))
        assert gen.op(None, ctx, 0) is PENDING
        assert gen.op(None, ctx, 0) is PENDING
        assert calls == [1]
        ctx.retire(1)
        ctx.retire("nemesis")
        assert gen.op(None, ctx, 0) == {"f": "read"}
        assert calls == [1]

    def test_exhausted_after_last_phase(self):
        ctx = Context([0])
        gen = phases(Once({"f": "a"}), Once({"f": "b"}))
        assert drain(gen, ctx) == [{"f": "a"}, {"f": "b"}]

    def test_phase_boundary_under_concurrency(self):
        processes = [0, 1, 2, 3]
        ctx = Context(processes)
        gen = phases(limit(20, Repeat({"f": "add"})), clients(Repeat({"f": "read"})))
        log = []
        lock = threading.Lock()

        def worker(process):
            while True:
                marker = ctx.progress_marker()
                result = gen.op(None, ctx, process)
                if result is PENDING:
                    ctx.wait_for_progress(marker, 0.05)
                    continue
                with lock:
                    log.append(result["f"])
                    if result["f"] == "read":
                        return

        threads = [threading.Thread(target=worker, args=(p,)) for p in processes]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=5)
        assert not any(t.is_alive() for t in threads)
        assert log[:20] == ["add"] * 20
        assert log[20:] == ["read"] * 4
