"""Shared fixtures for carly's tests.

Every test runs with fast settings (no outage backoff, a short abort
grace, artifacts under ``tmp_path``) and must not leave worker threads
behind.
"""

import threading

import pytest

from carly.memory import InMemoryCluster

NODES = ("n1", "n2", "n3")


def pytest_configure(config):
    config.addinivalue_line(
        "markers",
        "intentionally_leaves_dangling_threads: mark test as intentionally leaving threads alive "
        "(e.g., a client that never returns from invoke)",
    )


@pytest.fixture(autouse=True)
def _fast_settings(monkeypatch, tmp_path):
    monkeypatch.setenv("CARLY_NO_HOST_BACKOFF", "0")
    monkeypatch.setenv("CARLY_ABORT_GRACE", "1")
    monkeypatch.setenv("CARLY_STORE_DIR", str(tmp_path / "store"))


@pytest.fixture(autouse=True)
def _check_thread_cleanup(request):
    """Fail any test that leaves threads running.

    Worker and sidekick threads are daemons, so they would not block exit,
    but a leftover one means a run did not shut down cleanly.
    """
    initial_threads = set(threading.enumerate())

    yield

    new_threads = set(threading.enumerate()) - initial_threads
    main_thread = threading.main_thread()
    alive_threads = [t for t in new_threads if t != main_thread and t.is_alive()]

    if alive_threads and not request.node.get_closest_marker("intentionally_leaves_dangling_threads"):
        thread_info = ", ".join(
            f"{t.name} ({'daemon' if t.daemon else 'NON-DAEMON'}, ident={t.ident})" for t in alive_threads
        )
        pytest.fail(
            f"Test {request.node.nodeid} left {len(alive_threads)} thread(s) running: {thread_info}. "
            f"All threads must be joined before test completion."
        )


@pytest.fixture
def cluster():
    """A three-node in-memory cluster, installed and running."""
    c = InMemoryCluster(NODES)
    for node in NODES:
        c.setup(None, node)
    return c
