"""Pytest plugin for running carly tests from a test suite.

Registered through the ``pytest11`` entry point, so installing carly is
enough.  It adds:

- ``--carly-list``: report the name of every carly test instead of running it.
- ``--carly-time-limit`` / ``--carly-store``: exported as ``CARLY_TIME_LIMIT``
  and ``CARLY_STORE_DIR`` for the whole session, so tests built after
  configuration pick them up through :func:`carly.setups.default`.
- a ``carly(name)`` marker naming a catalog test, and the ``carly_run``
  fixture that runs a test and asserts that it was not found invalid::

    @pytest.mark.carly("batch set halves")
    def test_halves(carly_run):
        carly_run(time_limit=5)
"""

from __future__ import annotations

import os
from typing import TYPE_CHECKING, Any

import pytest

from carly import setups

if TYPE_CHECKING:
    from carly.core import RunResult, Test

_EXPORTED = {
    "--carly-time-limit": "time_limit",
    "--carly-store": "store_dir",
}
_LISTED = pytest.StashKey[list]()
_SAVED_ENV = pytest.StashKey[dict]()


def pytest_addoption(parser: pytest.Parser) -> None:
    group = parser.getgroup("carly", "Carly fault-injection tests")
    group.addoption(
        "--carly-list",
        action="store_true",
        default=False,
        help="Report the names of carly tests without running them.",
    )
    group.addoption("--carly-time-limit", type=float, default=None, help="Seconds of client and fault activity.")
    group.addoption("--carly-store", default=None, help="Directory for run artifacts.")


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "carly(name): a test that runs the named carly test")
    config.stash[_LISTED] = []
    saved = {}
    for option, key in _EXPORTED.items():
        value = config.getoption(option, default=None)
        if value is None:
            continue
        name = setups.env_name(key)
        saved[name] = os.environ.get(name)
        os.environ[name] = str(value)
    config.stash[_SAVED_ENV] = saved


def pytest_unconfigure(config: pytest.Config) -> None:
    for name, value in config.stash.get(_SAVED_ENV, {}).items():
        if value is None:
            os.environ.pop(name, None)
        else:
            os.environ[name] = value


def _listing(config: pytest.Config) -> bool:
    return bool(config.getoption("--carly-list", default=False))


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    if not _listing(config):
        return
    for item in items:
        marker = item.get_closest_marker("carly")
        if marker is not None and marker.args:
            config.stash[_LISTED].append(marker.args[0])
            item.add_marker(pytest.mark.skip(reason="--carly-list: not running"))


def pytest_terminal_summary(terminalreporter: Any, exitstatus: int, config: pytest.Config) -> None:
    listed = config.stash.get(_LISTED, [])
    if not listed:
        return
    terminalreporter.section("carly tests")
    for name in listed:
        terminalreporter.write_line(name)


@pytest.fixture
def carly_run(request: pytest.FixtureRequest, tmp_path):
    """Run a carly test and assert that no checker found it invalid.

    Call it with a :class:`~carly.core.Test`, or with options for the
    catalog test named by the ``carly`` marker.  Artifacts go to
    ``tmp_path`` unless a store directory was configured.
    """
    from carly.batch import lookup
    from carly.core import run

    def runner(test: Test | None = None, *, abort_after: float | None = None, **opts: Any) -> RunResult:
        if test is None:
            marker = request.node.get_closest_marker("carly")
            if marker is None or not marker.args:
                raise ValueError("carly_run needs a Test or a @pytest.mark.carly(name) marker")
            opts.setdefault("store_dir", _store_dir(tmp_path))
            test = lookup(marker.args[0])(opts)
        elif test.store_dir is None:
            test = test.with_options(store_dir=_store_dir(tmp_path))
        if _listing(request.config):
            request.config.stash[_LISTED].append(test.name)
            pytest.skip("--carly-list: not running")
        result = run(test, abort_after=abort_after)
        assert result.valid is not False, f"{test.name} is invalid: {result.results}"
        return result

    return runner


def _store_dir(tmp_path) -> str:
    if os.environ.get(setups.env_name("store_dir")):
        return setups.default("store_dir")
    return str(tmp_path / "store")
