"""
Carly: fault injection and history checking for distributed databases.

Describe a test (stable)::

    from carly.core import Test, run
    from carly.generator import clients, delay, time_limit

Workloads::

    from carly.batch import batch_set_test, adds, read_once

Fault injection::

    from carly.nemesis import Partitioner, Crasher, ClockScrambler, Bootstrapper

Checking a recorded history::

    from carly.checker import Compose, Linearizable, SetChecker
    from carly.history import History
"""

__version__ = "0.1.0"
