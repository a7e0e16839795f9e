"""Reconciliation pass behaviour against the in-memory rule store."""

import os

from guard_locks import ResourceLock
from ruleguard import POLICIES, PassResult, Reconciler


def test_empty_table_gets_one_rule(reconciler, store, make_rule):
    assert reconciler.reconcile() is PassResult.APPLIED

    assert store.table == [make_rule("172.18.0.0/16", "10.0.0.5")]
    rule = store.table[0]
    assert rule.chain == "INPUT"
    assert rule.source == "172.18.0.0/16"
    assert rule.destination == "10.0.0.5/32"
    assert rule.tag == "block-x"
    assert rule.action == "DROP"


def test_anchor_change_replaces_rule(reconciler, store, observer, make_rule):
    reconciler.reconcile()
    observer.anchor = "10.0.0.9"

    assert reconciler.reconcile() is PassResult.APPLIED
    assert store.table == [make_rule("172.18.0.0/16", "10.0.0.9")]
    assert store.mutations[-2:] == [
        ("remove", make_rule("172.18.0.0/16", "10.0.0.5")),
        ("insert", make_rule("172.18.0.0/16", "10.0.0.9")),
    ]


def test_second_pass_is_a_no_op(reconciler, store):
    reconciler.reconcile()
    before = list(store.table)
    mutations = len(store.mutations)

    assert reconciler.reconcile() is PassResult.UNCHANGED
    assert store.table == before
    assert len(store.mutations) == mutations


def test_converges_after_many_address_changes(reconciler, store, observer, make_rule):
    for address in ["10.0.0.5", "10.0.0.6", "192.168.1.20", "10.0.0.6"]:
        observer.anchor = address
        reconciler.reconcile()
        tagged = store.list_tagged("INPUT", "block-x")
        assert tagged == [make_rule("172.18.0.0/16", address)]


def test_duplicates_from_a_crashed_run_are_collapsed(reconciler, store, make_rule):
    store.table = [
        make_rule("172.18.0.0/16", "10.0.0.5"),
        make_rule("172.18.0.0/16", "10.0.0.5"),
        make_rule("172.18.0.0/16", "10.0.0.4"),
        make_rule("172.17.0.0/16", "10.0.0.5"),
    ]

    assert reconciler.reconcile() is PassResult.APPLIED
    assert store.table == [make_rule("172.18.0.0/16", "10.0.0.5")]


def test_subnet_change_with_same_anchor_is_detected(reconciler, store, observer, make_rule):
    reconciler.reconcile()
    observer.subnet = "172.20.0.0/16"

    assert reconciler.reconcile() is PassResult.APPLIED
    assert store.table == [make_rule("172.20.0.0/16", "10.0.0.5")]


def test_other_tags_and_chains_are_left_alone(reconciler, store, make_rule):
    foreign = [
        make_rule("172.18.0.0/16", "10.0.0.1", tag="someone-else"),
        make_rule("172.18.0.0/16", "10.0.0.1", chain="FORWARD"),
    ]
    store.table = list(foreign)

    reconciler.reconcile()
    assert store.table[0] == make_rule("172.18.0.0/16", "10.0.0.5")
    assert store.table[1:] == foreign


def test_runtime_unavailable_makes_no_changes(reconciler, store, observer, make_rule):
    observer.availability = [False]
    store.table = [make_rule("172.17.0.0/16", "10.0.0.1")]

    assert reconciler.reconcile() is PassResult.SKIPPED
    assert store.mutations == []
    assert store.table == [make_rule("172.17.0.0/16", "10.0.0.1")]


def test_pending_anchor_defers_the_pass(reconciler, store, observer):
    observer.anchor = None

    assert reconciler.reconcile() is PassResult.PENDING
    assert store.mutations == []


def test_malformed_entries_are_skipped_not_removed(reconciler, store, malformed_entry, make_rule):
    store.malformed = [malformed_entry]
    store.table = [make_rule("172.18.0.0/16", "10.0.0.4")]

    assert reconciler.reconcile() is PassResult.APPLIED
    assert store.table == [make_rule("172.18.0.0/16", "10.0.0.5")]
    assert all(kind != "remove" or rule != malformed_entry for kind, rule in store.mutations)

    assert reconciler.reconcile() is PassResult.UNCHANGED


def test_identical_rule_appearing_during_purge_is_not_duplicated(reconciler, store, make_rule):
    desired = make_rule("172.18.0.0/16", "10.0.0.5")
    original_remove = store.remove

    def remove_and_race(rule):
        removed = original_remove(rule)
        if desired not in store.table:
            store.table.append(desired)
        return removed

    store.table = [make_rule("172.18.0.0/16", "10.0.0.4")]
    store.remove = remove_and_race

    assert reconciler.reconcile() is PassResult.APPLIED
    assert store.table == [desired]
    assert not any(kind == "insert" for kind, _ in store.mutations)


def test_lock_timeout_aborts_pass(reconciler, store, lock_path):
    reconciler.lock_timeout = 0.2
    with ResourceLock(lock_path).acquire(timeout=1.0):
        assert reconciler.reconcile() is PassResult.LOCK_TIMEOUT
    assert store.mutations == []


def test_iptables_failure_fails_the_pass(reconciler, store):
    store.fail_on_insert = True
    assert reconciler.reconcile() is PassResult.FAILED
    assert store.table == []


def test_unusable_lock_directory_fails_the_pass(block_x_policy, observer, store, tmp_path):
    lock = ResourceLock(str(tmp_path / "missing" / "iptables.lock"), timeout=0.2)
    reconciler = Reconciler(block_x_policy, observer, store, lock, lock_timeout=0.2)
    assert reconciler.reconcile() is PassResult.FAILED
    assert store.mutations == []
    assert not lock.held


def test_resource_lock_released_after_pass(reconciler, resource_lock, lock_path):
    reconciler.reconcile()
    assert not resource_lock.held
    assert not os.path.exists(lock_path)


def test_installed_anchor_address_reads_destination(reconciler, store, make_rule):
    assert reconciler.installed_anchor_address() is None
    store.table = [make_rule("172.18.0.0/16", "10.0.0.7"), make_rule("172.18.0.0/16", "10.0.0.8")]
    assert reconciler.installed_anchor_address() == "10.0.0.7/32"


def test_drift_log_names_installed_anchor(reconciler, store, make_rule, caplog):
    store.table = [make_rule("172.18.0.0/16", "10.0.0.7")]
    with caplog.at_level("INFO"):
        assert reconciler.reconcile() is PassResult.APPLIED
    assert "installed destination 10.0.0.7/32, desired 10.0.0.5/32" in caplog.text


def test_cross_communication_targets_the_subnet(observer, store, resource_lock):
    policy = POLICIES["cross-communication"]
    observer.anchor = None
    reconciler = Reconciler(policy, observer, store, resource_lock)

    assert reconciler.reconcile() is PassResult.APPLIED
    [rule] = store.table
    assert rule.chain == "FORWARD"
    assert rule.source == rule.destination == "172.18.0.0/16"
    assert rule.tag == "block docker container cross communication"
