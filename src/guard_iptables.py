"""iptables backed rule store.

Rules owned by a policy are recognised purely by their comment, so every
command here carries `-m comment --comment <tag>` and deletion always
repeats the full match (never a rule number, which shifts as rules go away).
Nothing in this module locks; callers wrap enumerate-then-mutate sequences
in the shared ResourceLock.
"""

from __future__ import annotations

import ipaddress
import logging
import shlex
import subprocess
from dataclasses import dataclass, field
from typing import List, Optional, Union

from guard_errors import IptablesError

DROP = "DROP"
MISSING_RULE_HINT = "does a matching rule exist"


def normalize_address(value: Optional[str]) -> Optional[str]:
    """Render an address or CIDR the way iptables-save prints it (10.0.0.5 -> 10.0.0.5/32)."""
    if value is None or value == "":
        return None
    return str(ipaddress.ip_network(value.strip(), strict=False))


@dataclass(frozen=True)
class Rule:
    chain: str
    source: Optional[str]
    destination: Optional[str]
    tag: str
    action: str = field(default=DROP, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "source", normalize_address(self.source))
        object.__setattr__(self, "destination", normalize_address(self.destination))

    def match_args(self) -> List[str]:
        args: List[str] = []
        if self.source:
            args += ["-s", self.source]
        if self.destination:
            args += ["-d", self.destination]
        args += ["-m", "comment", "--comment", self.tag, "-j", self.action]
        return args

    def __str__(self):
        return f"-A {self.chain} {shlex.join(self.match_args())}"


@dataclass(frozen=True)
class MalformedRule:
    """A tagged line from iptables-save that could not be read back into a Rule."""
    line: str
    reason: str


TaggedEntry = Union[Rule, MalformedRule]


def parse_save_line(line: str, chain: str, tag: str) -> Optional[TaggedEntry]:
    """Parse one `iptables-save` line.

    Returns None for lines that do not belong to `chain` or do not carry
    `tag`, a Rule for lines the store can delete by exact match and a
    MalformedRule for anything else carrying the tag.
    """
    if not line.startswith(f"-A {chain} ") or tag not in line:
        return None
    try:
        tokens = shlex.split(line)
    except ValueError as e:
        return MalformedRule(line, f"unbalanced quoting: {e}")

    values = {}
    extra: List[str] = []
    i = 2
    while i < len(tokens):
        opt = tokens[i]
        if opt in {"-s", "-d", "-j", "--comment"} and i + 1 < len(tokens):
            values[opt] = tokens[i + 1]
            i += 2
        elif opt == "-m" and i + 1 < len(tokens) and tokens[i + 1] == "comment":
            i += 2
        else:
            extra.append(opt)
            i += 1

    if values.get("--comment") != tag:
        return None
    if extra:
        return MalformedRule(line, f"unexpected options {' '.join(extra)}")
    if values.get("-j") != DROP:
        return MalformedRule(line, f"unexpected target {values.get('-j')}")
    try:
        return Rule(chain=chain, source=values.get("-s"), destination=values.get("-d"), tag=tag)
    except ValueError as e:
        return MalformedRule(line, f"bad address: {e}")


class IptablesRuleStore:
    def __init__(self, iptables: str = "iptables", iptables_save: str = "iptables-save", dry_run: bool = False):
        self.iptables = iptables
        self.iptables_save = iptables_save
        self.dry_run = dry_run

    def _run(self, cmd: List[str]) -> subprocess.CompletedProcess:
        logging.debug(f"Running command: {shlex.join(cmd)}")
        try:
            return subprocess.run(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True)
        except OSError as e:
            raise IptablesError(f"Cannot run {cmd[0]}: {e}") from e

    def _mutate(self, args: List[str]) -> Optional[subprocess.CompletedProcess]:
        cmd = [self.iptables, *args]
        if self.dry_run:
            logging.info(f"[DRY-RUN] {shlex.join(cmd)}")
            return None
        return self._run(cmd)

    def list_tagged(self, chain: str, tag: str) -> List[TaggedEntry]:
        """Tagged entries of `chain`, in table precedence order."""
        proc = self._run([self.iptables_save, "-t", "filter"])
        if proc.returncode != 0:
            raise IptablesError(f"{self.iptables_save} failed ({proc.returncode}): {proc.stderr.strip()}")
        entries: List[TaggedEntry] = []
        for line in proc.stdout.splitlines():
            entry = parse_save_line(line.strip(), chain, tag)
            if entry is not None:
                entries.append(entry)
        return entries

    def exists_exact(self, rule: Rule) -> bool:
        proc = self._run([self.iptables, "-C", rule.chain, *rule.match_args()])
        if proc.returncode == 0:
            return True
        if proc.returncode == 1 or MISSING_RULE_HINT in proc.stderr:
            return False
        raise IptablesError(f"Error checking rule {rule}: {proc.stderr.strip()}")

    def remove(self, rule: Rule) -> bool:
        """Delete `rule`; False when it was already gone."""
        proc = self._mutate(["-D", rule.chain, *rule.match_args()])
        if proc is None or proc.returncode == 0:
            return True
        if MISSING_RULE_HINT in proc.stderr:
            logging.debug(f"Rule already removed: {rule}")
            return False
        raise IptablesError(f"Error removing rule {rule}: {proc.stderr.strip()}")

    def insert_front(self, rule: Rule) -> None:
        proc = self._mutate(["-I", rule.chain, "1", *rule.match_args()])
        if proc is not None and proc.returncode != 0:
            raise IptablesError(f"Error inserting rule {rule}: {proc.stderr.strip()}")
