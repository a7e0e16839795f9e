"""Observation of the facts a policy converges on.

The Docker daemon supplies the bridge subnet and the kernel supplies the
interface address. Neither lookup is allowed to fail a pass: a missing
subnet degrades to the fallback CIDR, and a missing address is reported as
pending so the caller can retry.
"""

from __future__ import annotations

import ipaddress
import logging
import os
import re
import stat
import subprocess
import threading
from typing import Optional

from docker import DockerClient
from docker.errors import DockerException
from requests.exceptions import RequestException

from guard_iptables import normalize_address

DEFAULT_DOCKER_SOCKET = "/var/run/docker.sock"
DEFAULT_BRIDGE_NETWORK = "bridge"
DEFAULT_FALLBACK_SUBNET = "172.17.0.0/16"

INET_RE = re.compile(r"\binet\s+(\d{1,3}(?:\.\d{1,3}){3})")


class DockerStateObserver:
    def __init__(
            self,
            socket_path: str = DEFAULT_DOCKER_SOCKET,
            bridge_network: str = DEFAULT_BRIDGE_NETWORK,
            fallback_subnet: str = DEFAULT_FALLBACK_SUBNET,
            address_retry_secs: float = 2.0,
            address_wait_attempts: int = 0,
            stop_event: Optional[threading.Event] = None,
    ):
        self.socket_path = socket_path
        self.bridge_network = bridge_network
        self.fallback_subnet = normalize_address(fallback_subnet)
        self.address_retry_secs = address_retry_secs
        self.address_wait_attempts = address_wait_attempts
        self.stop_event = stop_event or threading.Event()

    def runtime_available(self) -> bool:
        try:
            return stat.S_ISSOCK(os.stat(self.socket_path).st_mode)
        except OSError:
            return False

    def docker_client(self) -> DockerClient:
        return DockerClient(base_url=f"unix://{self.socket_path}")

    def desired_subnet(self) -> str:
        """IPv4 subnet of the bridge network, or the fallback CIDR."""
        try:
            client = self.docker_client()
            try:
                network = client.networks.get(self.bridge_network)
            finally:
                client.close()
            configs = (network.attrs.get("IPAM") or {}).get("Config") or []
            for config in configs:
                subnet = (config or {}).get("Subnet")
                if subnet and ipaddress.ip_network(subnet, strict=False).version == 4:
                    return normalize_address(subnet)
            logging.warning(f"Network {self.bridge_network} has no IPv4 subnet, using {self.fallback_subnet}")
        except (DockerException, RequestException, ValueError, AttributeError) as e:
            logging.warning(f"Could not inspect network {self.bridge_network} ({e}), using {self.fallback_subnet}")
        return self.fallback_subnet

    def current_anchor_address(self, interface: str) -> Optional[str]:
        """First IPv4 address on `interface`; None while none is assigned."""
        try:
            out = subprocess.run(["ip", "-4", "-o", "addr", "show", "dev", interface],
                                 check=True, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True)
        except (subprocess.CalledProcessError, OSError) as e:
            logging.debug(f"ip addr show {interface} failed: {e}")
            return None
        match = INET_RE.search(out.stdout)
        return match.group(1) if match else None

    def wait_for_anchor_address(self, interface: str) -> Optional[str]:
        """Poll until `interface` has an address.

        Unbounded unless address_wait_attempts is positive. Returns None when
        the attempts run out or the stop event is set.
        """
        attempt = 0
        while True:
            address = self.current_anchor_address(interface)
            if address:
                logging.info(f"{interface} IP: {address}")
                return address
            attempt += 1
            if 0 < self.address_wait_attempts <= attempt:
                logging.warning(f"No address on {interface} after {attempt} attempts, deferring")
                return None
            logging.info(f"Unable to determine {interface} IP. Retrying...")
            if self.stop_event.wait(self.address_retry_secs):
                return None
