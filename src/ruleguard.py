"""Docker Rule Guard

Keeps exactly one tagged DROP rule per policy in the host's iptables filter
table, tracking two facts that change underneath it:

  - the subnet of Docker's bridge network (falls back to 172.17.0.0/16 when
    Docker cannot be asked), and
  - the IPv4 address of an "anchor" interface such as eth0.

Built-in policies:

  management            INPUT    -s <subnet> -d <eth0 address>
                        "block docker subnets to management ip"
  cross-communication   FORWARD  -s <subnet> -d <subnet>
                        "block docker container cross communication"

One reconciliation pass:

  1. guard       Docker socket missing -> nothing to do yet
  2. observe     desired subnet, then wait for the anchor address
  3. drift       exactly one tagged rule with the desired source and
                 destination -> done, no mutation
  4. purge       under the resource lock, delete every tagged rule by exact
                 match (duplicates left by a crash and rules naming an old
                 subnet or address alike)
  5. install     unless an identical rule appeared meanwhile, insert the
                 desired rule at the top of the chain

Passes are triggered at start, when Docker comes back after being down, and
every TICK_SECS to catch address changes nothing else reports.

Environment Variables:
  POLICY                 management | cross-communication (default management)
  RULE_TAG / RULE_CHAIN  override the preset's comment and chain
  ANCHOR_INTERFACE       override the preset's interface ("" targets the subnet)
  BRIDGE_NETWORK         (default bridge)
  FALLBACK_SUBNET        (default 172.17.0.0/16)
  DOCKER_SOCKET          (default /var/run/docker.sock)
  INSTANCE_LOCK_FILE     (default /var/run/docker-rule-guard-<policy>.lock)
  RESOURCE_LOCK_FILE     (default /var/lock/iptables.lock)
  STALE_THRESHOLD_SECS   (default 5)
  RENEW_INTERVAL_SECS    (default 3)
  LOCK_TIMEOUT_SECS      (default 5)
  TICK_SECS              (default 5)
  POLL_SECS              (default 1)   -> Docker restart polling cadence
  SETTLE_SECS            (default 2.5) -> delay after Docker comes back
  ADDRESS_RETRY_SECS     (default 2)
  ADDRESS_WAIT_ATTEMPTS  (default 0 = retry forever)
  DRY_RUN                (default false) -> only log mutating iptables commands
"""

from __future__ import annotations

import enum
import logging
import os
import threading
from dataclasses import dataclass
from typing import Dict, List, Optional

from guard_errors import ConfigError, IptablesError, LockHeldError, LockTimeout, StartupLockTimeout
from guard_iptables import IptablesRuleStore, MalformedRule, Rule, TaggedEntry
from guard_locks import InstanceLock, ResourceLock
from guard_observer import DEFAULT_BRIDGE_NETWORK, DEFAULT_DOCKER_SOCKET, DEFAULT_FALLBACK_SUBNET, \
    DockerStateObserver


def env_bool(name: str, default: bool) -> bool:
    return os.getenv(name, str(default)).strip().lower() in {"1", "true", "yes", "on"}


def env_float(name: str, default: float, minimum: float = 0.0) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}")
    if value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got {value}")
    return value


@dataclass(frozen=True)
class Policy:
    name: str
    chain: str
    tag: str
    # None makes the rule target the subnet itself instead of an interface.
    anchor_interface: Optional[str] = None

    def build_rule(self, subnet: str, anchor: Optional[str] = None) -> Rule:
        destination = anchor if self.anchor_interface else subnet
        return Rule(chain=self.chain, source=subnet, destination=destination, tag=self.tag)


POLICIES: Dict[str, Policy] = {
    "management": Policy(
        name="management",
        chain="INPUT",
        tag="block docker subnets to management ip",
        anchor_interface="eth0",
    ),
    "cross-communication": Policy(
        name="cross-communication",
        chain="FORWARD",
        tag="block docker container cross communication",
    ),
}


@dataclass
class GuardConfig:
    policy: Policy
    docker_socket: str = DEFAULT_DOCKER_SOCKET
    bridge_network: str = DEFAULT_BRIDGE_NETWORK
    fallback_subnet: str = DEFAULT_FALLBACK_SUBNET
    instance_lock_file: str = "/var/run/docker-rule-guard.lock"
    resource_lock_file: str = "/var/lock/iptables.lock"
    stale_threshold: float = 5.0
    renew_interval: float = 3.0
    lock_timeout: float = 5.0
    tick_secs: float = 5.0
    poll_secs: float = 1.0
    settle_secs: float = 2.5
    address_retry_secs: float = 2.0
    address_wait_attempts: int = 0
    dry_run: bool = False

    @classmethod
    def from_env(cls) -> "GuardConfig":
        name = os.getenv("POLICY", "management").strip()
        if name not in POLICIES:
            raise ConfigError(f"POLICY must be one of {', '.join(sorted(POLICIES))}, got {name!r}")
        preset = POLICIES[name]
        anchor = os.getenv("ANCHOR_INTERFACE", preset.anchor_interface or "").strip()
        policy = Policy(
            name=name,
            chain=os.getenv("RULE_CHAIN", preset.chain).strip(),
            tag=os.getenv("RULE_TAG", preset.tag),
            anchor_interface=anchor or None,
        )
        if not policy.chain or not policy.tag:
            raise ConfigError("RULE_CHAIN and RULE_TAG must not be empty")

        config = cls(
            policy=policy,
            docker_socket=os.getenv("DOCKER_SOCKET", DEFAULT_DOCKER_SOCKET),
            bridge_network=os.getenv("BRIDGE_NETWORK", DEFAULT_BRIDGE_NETWORK),
            fallback_subnet=os.getenv("FALLBACK_SUBNET", DEFAULT_FALLBACK_SUBNET),
            instance_lock_file=os.getenv("INSTANCE_LOCK_FILE", f"/var/run/docker-rule-guard-{name}.lock"),
            resource_lock_file=os.getenv("RESOURCE_LOCK_FILE", "/var/lock/iptables.lock"),
            stale_threshold=env_float("STALE_THRESHOLD_SECS", 5.0, minimum=0.1),
            renew_interval=env_float("RENEW_INTERVAL_SECS", 3.0, minimum=0.05),
            lock_timeout=env_float("LOCK_TIMEOUT_SECS", 5.0),
            tick_secs=env_float("TICK_SECS", 5.0, minimum=0.1),
            poll_secs=env_float("POLL_SECS", 1.0, minimum=0.05),
            settle_secs=env_float("SETTLE_SECS", 2.5),
            address_retry_secs=env_float("ADDRESS_RETRY_SECS", 2.0, minimum=0.05),
            address_wait_attempts=int(env_float("ADDRESS_WAIT_ATTEMPTS", 0)),
            dry_run=env_bool("DRY_RUN", False),
        )
        config.validate()
        return config

    def validate(self) -> None:
        if self.renew_interval >= self.stale_threshold:
            raise ConfigError(
                f"RENEW_INTERVAL_SECS ({self.renew_interval}) must be below "
                f"STALE_THRESHOLD_SECS ({self.stale_threshold})")
        try:
            Rule(chain=self.policy.chain, source=self.fallback_subnet, destination=None, tag=self.policy.tag)
        except ValueError as e:
            raise ConfigError(f"FALLBACK_SUBNET is not a valid CIDR: {e}")


class PassResult(enum.Enum):
    SKIPPED = "skipped"            # runtime unavailable
    PENDING = "pending"            # anchor address never resolved
    UNCHANGED = "unchanged"
    APPLIED = "applied"
    LOCK_TIMEOUT = "lock-timeout"
    FAILED = "failed"


class Reconciler:
    def __init__(self, policy: Policy, observer: DockerStateObserver, store: IptablesRuleStore,
                 resource_lock: ResourceLock, lock_timeout: float = 5.0):
        self.policy = policy
        self.observer = observer
        self.store = store
        self.resource_lock = resource_lock
        self.lock_timeout = lock_timeout

    def _list_installed(self) -> List[TaggedEntry]:
        with self.resource_lock.acquire(self.lock_timeout):
            return self.store.list_tagged(self.policy.chain, self.policy.tag)

    @staticmethod
    def _rules(entries: List[TaggedEntry]) -> List[Rule]:
        return [e for e in entries if isinstance(e, Rule)]

    def installed_anchor_address(self, installed: Optional[List[Rule]] = None) -> Optional[str]:
        """Destination of the first tagged rule, read live from the table unless given."""
        rules = self._rules(self._list_installed()) if installed is None else installed
        return rules[0].destination if rules else None

    def reconcile(self) -> PassResult:
        name = self.policy.name
        if not self.observer.runtime_available():
            logging.info(f"[{name}] Docker is not running. Skipping iptables update.")
            return PassResult.SKIPPED

        subnet = self.observer.desired_subnet()
        logging.info(f"[{name}] Blocked subnet: {subnet}")
        anchor = None
        if self.policy.anchor_interface:
            anchor = self.observer.wait_for_anchor_address(self.policy.anchor_interface)
            if anchor is None:
                return PassResult.PENDING
        desired = self.policy.build_rule(subnet, anchor)

        try:
            installed = self._rules(self._list_installed())
            if len(installed) == 1 and installed[0] == desired:
                logging.info(f"[{name}] Rule up to date, no updates required.")
                return PassResult.UNCHANGED
            current = self.installed_anchor_address(installed)
            logging.info(f"[{name}] Drift detected ({len(installed)} tagged rule(s), installed destination "
                         f"{current}, desired {desired.destination}). Updating iptables rules...")
            with self.resource_lock.acquire(self.lock_timeout):
                self._purge(desired)
                self._install(desired)
        except LockTimeout as e:
            logging.warning(f"[{name}] Pass aborted: {e}")
            return PassResult.LOCK_TIMEOUT
        except (IptablesError, OSError) as e:
            logging.error(f"[{name}] Pass failed: {e}")
            return PassResult.FAILED
        return PassResult.APPLIED

    def _purge(self, desired: Rule) -> None:
        for entry in self.store.list_tagged(self.policy.chain, self.policy.tag):
            if isinstance(entry, MalformedRule):
                logging.warning(f"Skipping malformed rule: {entry.line} ({entry.reason})")
                continue
            if entry.source != desired.source:
                logging.info(f"Removing rule for stale subnet {entry.source}: {entry}")
            else:
                logging.info(f"Removing duplicate rule: {entry}")
            if not self.store.remove(entry):
                logging.info(f"Rule already removed by another instance: {entry}")

    def _install(self, desired: Rule) -> None:
        if self.store.exists_exact(desired):
            logging.info(f"Rule already exists. Skipping addition: {desired}")
            return
        self.store.insert_front(desired)
        logging.info(f"Applied iptables rule: {desired}")


class WatchLoop:
    def __init__(self, reconciler: Reconciler, observer: DockerStateObserver, tick_secs: float = 5.0,
                 poll_secs: float = 1.0, settle_secs: float = 2.5,
                 stop_event: Optional[threading.Event] = None):
        self.reconciler = reconciler
        self.observer = observer
        self.tick_secs = tick_secs
        self.poll_secs = poll_secs
        self.settle_secs = settle_secs
        self.stop_event = stop_event or threading.Event()

    def stop(self) -> None:
        self.stop_event.set()

    def _wait_for_runtime(self) -> bool:
        while not self.observer.runtime_available():
            if self.stop_event.wait(self.poll_secs):
                return False
        return True

    def run(self) -> None:
        if self.reconciler.reconcile() is PassResult.LOCK_TIMEOUT:
            raise StartupLockTimeout("resource lock timed out during the initial pass")

        logging.info("Monitoring Docker restarts and address changes...")
        while not self.stop_event.is_set():
            if not self.observer.runtime_available():
                logging.info("Docker stopped. Waiting for restart...")
                if not self._wait_for_runtime():
                    break
                logging.info("Docker restarted. Re-applying iptables rule...")
                if self.stop_event.wait(self.settle_secs):
                    break
                self.reconciler.reconcile()
                continue
            if self.stop_event.wait(self.tick_secs):
                break
            self.reconciler.reconcile()


class RuleGuard:
    def __init__(self, config: GuardConfig):
        self.config = config
        self.stop_event = threading.Event()
        self.instance_lock = InstanceLock(config.instance_lock_file, stale_threshold=config.stale_threshold,
                                          renew_interval=config.renew_interval,
                                          on_lost=self._instance_lock_lost)
        self.observer = DockerStateObserver(
            socket_path=config.docker_socket,
            bridge_network=config.bridge_network,
            fallback_subnet=config.fallback_subnet,
            address_retry_secs=config.address_retry_secs,
            address_wait_attempts=config.address_wait_attempts,
            stop_event=self.stop_event,
        )
        self.reconciler = Reconciler(
            policy=config.policy,
            observer=self.observer,
            store=IptablesRuleStore(dry_run=config.dry_run),
            resource_lock=ResourceLock(config.resource_lock_file, stale_threshold=config.stale_threshold,
                                       timeout=config.lock_timeout),
            lock_timeout=config.lock_timeout,
        )
        self.watch = WatchLoop(self.reconciler, self.observer, tick_secs=config.tick_secs,
                               poll_secs=config.poll_secs, settle_secs=config.settle_secs,
                               stop_event=self.stop_event)

    def start(self) -> None:
        policy = self.config.policy
        logging.info(f"Starting Docker Rule Guard: policy {policy.name}, chain {policy.chain}, "
                     f"tag {policy.tag!r}")
        try:
            with self.instance_lock:
                self.watch.run()
            if self.instance_lock.lost:
                raise LockHeldError(f"instance lock {self.instance_lock.path} was taken over")
        finally:
            logging.info("Shutting down...")

    def _instance_lock_lost(self) -> None:
        # Called from the renewer thread; the main thread winds down at its next wait.
        logging.error("Instance lock lost to another process. Stopping.")
        self.watch.stop()

    def stop(self, *_):
        self.watch.stop()
        raise SystemExit(0)
