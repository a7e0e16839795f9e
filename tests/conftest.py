"""Shared pytest fixtures for unit tests.

The iptables table and the Docker/interface lookups are replaced by small
in-memory fakes so reconciliation passes can run without root.
"""

import pytest

from guard_errors import IptablesError
from guard_iptables import MalformedRule, Rule
from guard_locks import ResourceLock
from ruleguard import Policy, Reconciler


class FakeRuleStore:
    """In-memory stand-in for `IptablesRuleStore`; `table` is in precedence order."""

    def __init__(self):
        self.table = []
        self.malformed = []
        self.mutations = []
        self.fail_on_insert = False
        self.on_insert = None

    def list_tagged(self, chain, tag):
        rules = [r for r in self.table if r.chain == chain and r.tag == tag]
        return rules + list(self.malformed)

    def exists_exact(self, rule):
        return rule in self.table

    def remove(self, rule):
        if rule not in self.table:
            return False
        self.table.remove(rule)
        self.mutations.append(("remove", rule))
        return True

    def insert_front(self, rule):
        if self.fail_on_insert:
            raise IptablesError("iptables: Resource temporarily unavailable.")
        self.table.insert(0, rule)
        self.mutations.append(("insert", rule))
        if self.on_insert is not None:
            self.on_insert()


class FakeObserver:
    """Scripted observer; `availability` is consumed one value per probe, the last value sticks."""

    def __init__(self, subnet="172.18.0.0/16", anchor="10.0.0.5", availability=(True,)):
        self.subnet = subnet
        self.anchor = anchor
        self.availability = list(availability)
        self.probes = 0

    def runtime_available(self):
        self.probes += 1
        if len(self.availability) > 1:
            return self.availability.pop(0)
        return self.availability[0]

    def desired_subnet(self):
        return self.subnet

    def wait_for_anchor_address(self, interface):
        return self.anchor


@pytest.fixture
def store():
    return FakeRuleStore()


@pytest.fixture
def observer():
    return FakeObserver()


@pytest.fixture
def lock_path(tmp_path):
    return str(tmp_path / "iptables.lock")


@pytest.fixture
def resource_lock(lock_path):
    return ResourceLock(lock_path, timeout=1.0)


@pytest.fixture
def block_x_policy():
    return Policy(name="block-x", chain="INPUT", tag="block-x", anchor_interface="eth0")


@pytest.fixture
def reconciler(block_x_policy, observer, store, resource_lock):
    return Reconciler(block_x_policy, observer, store, resource_lock, lock_timeout=1.0)


@pytest.fixture
def malformed_entry():
    return MalformedRule('-A INPUT -i eth1 -m comment --comment "block-x" -j DROP', "unexpected options -i eth1")


@pytest.fixture
def make_rule():
    """Factory for rules in the block-x policy's chain."""

    def _make(source, destination, tag="block-x", chain="INPUT"):
        return Rule(chain=chain, source=source, destination=destination, tag=tag)

    return _make
