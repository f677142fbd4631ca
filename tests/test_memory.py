"""Tests for the in-memory cluster."""

import pytest

from carly.errors import (
    AlreadyExistsError,
    ClientError,
    NoHostAvailableError,
    UnavailableError,
    WriteTimeoutError,
)
from carly.memory import InMemoryCluster
from carly.nemesis import complete_grudge
from carly.statements import (
    Batch,
    ConsistencyLevel,
    CreateKeyspace,
    CreateTable,
    Insert,
    Select,
    UseKeyspace,
)

COLUMNS = (("id", "int"), ("value", "int"))


def session(cluster, contacts=("n1", "n2", "n3")):
    conn = cluster.connect(list(contacts))
    conn.execute(CreateKeyspace("ks", replication_factor=3))
    conn.execute(UseKeyspace("ks"))
    conn.execute(CreateTable("t", COLUMNS, primary_key="id"))
    return conn


def insert(v, consistency=ConsistencyLevel.QUORUM):
    return Insert("t", {"id": v, "value": v}, consistency=consistency)


def values(conn, consistency=ConsistencyLevel.ALL):
    return {row["value"] for row in conn.execute(Select("t", consistency=consistency))}


class TestSchema:
    def test_create_is_idempotent(self, cluster):
        session(cluster)
        session(cluster)
        assert cluster.tables() == [("ks", "t")]

    def test_strict_create_raises(self, cluster):
        conn = session(cluster)
        with pytest.raises(AlreadyExistsError):
            conn.execute(CreateKeyspace("ks", if_not_exists=False))
        with pytest.raises(AlreadyExistsError):
            conn.execute(CreateTable("t", COLUMNS, primary_key="id", if_not_exists=False))

    def test_unknown_keyspace_and_table(self, cluster):
        conn = cluster.connect(["n1"])
        with pytest.raises(ClientError, match="does not exist"):
            conn.execute(UseKeyspace("nope"))
        with pytest.raises(ClientError, match="No keyspace"):
            conn.execute(Select("t"))
        conn = session(cluster)
        with pytest.raises(ClientError, match="unconfigured table"):
            conn.execute(Select("missing"))


class TestReadsAndWrites:
    def test_write_then_read(self, cluster):
        conn = session(cluster)
        conn.execute(insert(7))
        assert values(conn) == {7}
        for node in ("n1", "n2", "n3"):
            assert cluster.rows(node, "ks", "t") == {7: {"id": 7, "value": 7}}

    def test_closed_connection(self, cluster):
        conn = session(cluster)
        conn.close()
        with pytest.raises(ClientError, match="closed"):
            conn.execute(insert(1))

    def test_isolated_coordinator_cannot_reach_quorum(self, cluster):
        session(cluster)
        cluster.partition(complete_grudge([["n1"], ["n2", "n3"]]))
        with pytest.raises(UnavailableError, match="QUORUM"):
            session(cluster, ["n1"]).execute(insert(1))
        assert values(session(cluster, ["n1"]), ConsistencyLevel.ONE) == set()

    def test_majority_side_writes_and_hints_the_rest(self, cluster):
        session(cluster)
        cluster.partition(complete_grudge([["n1"], ["n2", "n3"]]))
        majority = session(cluster, ["n2"])
        majority.execute(insert(1))
        assert cluster.pending_hints() == 1
        assert cluster.rows("n1", "ks", "t") == {}
        with pytest.raises(UnavailableError):
            values(majority)
        cluster.heal()
        assert cluster.pending_hints() == 0
        assert cluster.rows("n1", "ks", "t") == {1: {"id": 1, "value": 1}}
        assert values(majority) == {1}

    def test_batches_are_all_or_nothing(self, cluster):
        conn = session(cluster)
        conn.execute(CreateTable("u", COLUMNS, primary_key="id"))
        cluster.stop("n2", "scylla")
        cluster.stop("n3", "scylla")
        batch = Batch((Insert("t", {"id": 1, "value": 1}), Insert("u", {"id": -1, "value": 1})))
        with pytest.raises(UnavailableError):
            session(cluster, ["n1"]).execute(batch)
        cluster.start("n2", "scylla")
        cluster.start("n3", "scylla")
        assert values(conn) == set()

    def test_crashed_node_catches_up_on_restart(self, cluster):
        conn = session(cluster, ["n1"])
        cluster.stop("n3", "scylla")
        conn.execute(insert(5))
        assert cluster.rows("n3", "ks", "t") == {}
        cluster.start("n3", "scylla")
        assert 5 in cluster.rows("n3", "ks", "t")

    def test_no_live_contact(self, cluster):
        conn = session(cluster, ["n1"])
        cluster.stop("n1", "scylla")
        with pytest.raises(NoHostAvailableError):
            conn.execute(insert(1))

    def test_consistency_one_survives_a_minority(self, cluster):
        session(cluster)
        cluster.partition(complete_grudge([["n1"], ["n2", "n3"]]))
        session(cluster, ["n1"]).execute(insert(9, ConsistencyLevel.ONE))
        assert cluster.rows("n1", "ks", "t") == {9: {"id": 9, "value": 9}}
        assert cluster.pending_hints() == 2


class TestTopology:
    def test_joining_nodes_start_outside_the_ring(self):
        cluster = InMemoryCluster(["n1", "n2", "n3", "n4"], joining=["n4"])
        for node in cluster.nodes:
            cluster.setup(None, node)
        assert cluster.ring() == ["n1", "n2", "n3"]
        assert "n4" not in cluster.up()

    def test_bootstrap_streams_existing_data(self):
        cluster = InMemoryCluster(["n1", "n2", "n3", "n4"], joining=["n4"])
        for node in cluster.nodes:
            cluster.setup(None, node)
        conn = session(cluster)
        conn.execute(insert(1))
        cluster.bootstrap("n4")
        assert cluster.ring() == ["n1", "n2", "n3", "n4"]
        assert 1 in cluster.rows("n4", "ks", "t")
        with pytest.raises(RuntimeError, match="already a member"):
            cluster.bootstrap("n4")

    def test_decommission_streams_data_away(self):
        cluster = InMemoryCluster(["n1", "n2", "n3", "n4"])
        for node in cluster.nodes:
            cluster.setup(None, node)
        conn = session(cluster, ["n2"])
        for v in range(20):
            conn.execute(insert(v))
        cluster.decommission("n1")
        assert "n1" not in cluster.ring()
        assert "n1" not in cluster.up()
        assert values(conn) == set(range(20))

    def test_cannot_decommission_a_down_node(self, cluster):
        cluster.stop("n1", "scylla")
        with pytest.raises(RuntimeError, match="down"):
            cluster.decommission("n1")

    def test_teardown_wipes_a_node(self, cluster):
        conn = session(cluster)
        conn.execute(insert(1))
        cluster.teardown(None, "n1")
        assert cluster.rows("n1", "ks", "t") == {}
        with pytest.raises(RuntimeError, match="not installed"):
            cluster.start("n1", "scylla")


class TestFaults:
    def test_injected_errors(self, cluster):
        conn = session(cluster)
        cluster.inject(UnavailableError("injected"), count=2, when=lambda s: isinstance(s, Insert))
        with pytest.raises(UnavailableError):
            conn.execute(insert(1))
        assert values(conn) == set()
        with pytest.raises(UnavailableError):
            conn.execute(insert(2))
        conn.execute(insert(3))
        assert values(conn) == {3}

    def test_applied_injection_takes_effect(self, cluster):
        conn = session(cluster)
        cluster.inject(WriteTimeoutError("timed out"), apply=True)
        with pytest.raises(WriteTimeoutError):
            conn.execute(insert(4))
        assert values(conn) == {4}

    def test_clock_offsets(self, cluster):
        cluster.set_clock_offset("n1", 250)
        assert cluster.clock_offsets() == {"n1": 250}
        cluster.reset_clocks()
        assert cluster.clock_offsets() == {}

    def test_slow_network(self, cluster):
        cluster.slow_network(0.01)
        assert cluster.latency == pytest.approx(0.01)
        cluster.fast_network()
        assert cluster.latency == 0

    def test_events_are_recorded(self, cluster):
        cluster.flush("n1")
        cluster.compact("n1")
        cluster.heal()
        assert [e[0] for e in cluster.events[-3:]] == ["flush", "compact", "heal"]
