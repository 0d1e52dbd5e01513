#!/usr/bin/env python3
"""
igd-punch - open a port on the NAT gateway without touching the router UI.

Finds the Internet Gateway Device with SSDP, reads its WAN connection control
URL and adds TCP port mappings through UPnP SOAP actions. Mappings can be
listed in the config (added at startup, removed at shutdown) or requested at
run time through the JSON command API (see command_api.py and igd_ctl.py).

Usage:
    python igd_punch.py [--config config.yaml]

    Or with environment variables:
    IGD_LOCAL_IP=192.168.1.50 IGD_API_PORT=8091 python igd_punch.py
"""

import argparse
import asyncio
import ipaddress
import logging
import os
import signal
import socket
import sys
from pathlib import Path
from typing import Optional

try:
    import yaml
except ImportError:
    yaml = None

from command_api import run_command_api
from igd_client import REJECTED, IGDClient
from igd_session import QUERYING_EXTERNAL_ADDRESS, READY
from igd_transport import AsyncioTransport

# -----------------------------------------------------------------------------
# Logging setup
# -----------------------------------------------------------------------------

def setup_logging(level: str = "INFO") -> None:
    """Configure logging format and level."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    # Reduce noise from libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


# -----------------------------------------------------------------------------
# Configuration
# -----------------------------------------------------------------------------

DEFAULTS = {
    "log_level": "INFO",
    "enable_api": True,
    "api_host": "127.0.0.1",
    "api_port": 8091,
    "local_ip": "",
    "user_agent": "igd-punch",
    "ssdp_retransmits": 4,
    "send_segment_size": 1400,
    "scan_on_start": True,
    "mappings": [],             # e.g. [{"local_port": 80, "remote_port": 9876}]
    "remove_on_exit": True,
    "poll_interval": 0.5,
    "poll_attempts": 40,
}


def load_config(config_path: Optional[Path] = None) -> dict:
    """Load configuration from YAML file with environment overrides."""
    if yaml is None:
        raise ImportError("PyYAML is required. Install with: pip install pyyaml")

    config = DEFAULTS.copy()

    # Load config: explicit path, or config.yaml in project dir
    if config_path:
        if not config_path.exists():
            raise FileNotFoundError(f"Config not found: {config_path}")
        path = config_path
    else:
        path = Path(__file__).parent / "config.yaml"
        if not path.exists():
            raise FileNotFoundError(
                f"Config not found: {path}\n"
                "Copy config.sample.yaml to config.yaml and edit as needed."
            )
    with open(path) as f:
        config.update(yaml.safe_load(f) or {})

    # Environment overrides
    if os.getenv("IGD_API_HOST"):
        config["api_host"] = os.getenv("IGD_API_HOST")
    if os.getenv("IGD_API_PORT"):
        config["api_port"] = int(os.getenv("IGD_API_PORT"))
    if os.getenv("IGD_LOCAL_IP"):
        config["local_ip"] = os.getenv("IGD_LOCAL_IP")
    if os.getenv("LOG_LEVEL"):
        config["log_level"] = os.getenv("LOG_LEVEL")

    return config


def parse_mappings(config: dict) -> list[tuple[int, int]]:
    """Return [(local_port, remote_port)] from config['mappings'], skipping bad entries."""
    out: list[tuple[int, int]] = []
    for item in config.get("mappings") or []:
        if isinstance(item, dict):
            local_port = item.get("local_port")
            remote_port = item.get("remote_port", local_port)
        elif isinstance(item, (list, tuple)) and len(item) >= 2:
            local_port, remote_port = item[0], item[1]
        elif isinstance(item, int):
            local_port = remote_port = item
        else:
            logging.getLogger(__name__).warning("Ignoring mapping entry %r", item)
            continue
        try:
            local_port, remote_port = int(local_port), int(remote_port)
        except (TypeError, ValueError):
            logging.getLogger(__name__).warning("Ignoring mapping entry %r", item)
            continue
        if 0 < local_port <= 65535 and 0 < remote_port <= 65535:
            out.append((local_port, remote_port))
        else:
            logging.getLogger(__name__).warning("Ignoring out-of-range mapping %r", item)
    return out


def get_local_ip(config: dict) -> Optional[str]:
    """Get the LAN address to map: configured, or the one used for outbound traffic."""
    ip = (config.get("local_ip") or "").strip()
    if ip:
        return ip
    try:
        s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        s.settimeout(2.0)
        s.connect(("8.8.8.8", 80))
        ip = s.getsockname()[0]
        s.close()
        return ip
    except OSError:
        return None


# -----------------------------------------------------------------------------
# Automatic mappings
# -----------------------------------------------------------------------------

class PortMapper:
    """
    Drives IGDClient the way a polling host would: scan until the gateway is
    ready, then add (or remove) each configured mapping in turn.
    """

    def __init__(self, client: IGDClient, config: dict, logger: logging.Logger) -> None:
        self.client = client
        self.config = config
        self.logger = logger
        self.interval = float(config.get("poll_interval", 0.5))
        self.attempts = int(config.get("poll_attempts", 40))
        self.mapped: list[int] = []

    async def _wait_ready(self) -> bool:
        for _ in range(self.attempts):
            if self.client.state == READY:
                return True
            await asyncio.sleep(self.interval)
        return self.client.state == READY

    async def scan(self) -> int:
        """Start discovery and return the gateway address once ready (0 if never)."""
        gateway = self.client.scan_for_gateway()
        if gateway:
            return gateway
        # Scanning again before ready would restart discovery; watch the state
        if await self._wait_ready():
            return self.client.scan_for_gateway()
        return 0

    async def external_address(self) -> int:
        """Query the external address and poll for the result (0 if none)."""
        if self.client.query_external_address() == REJECTED:
            return 0
        for _ in range(self.attempts):
            await asyncio.sleep(self.interval)
            if self.client.state != QUERYING_EXTERNAL_ADDRESS:
                # Reply carried no address
                return 0
            result = self.client.query_external_address()
            if result:
                return result
        return 0

    async def add_all(self, local_ip: str, mappings: list[tuple[int, int]]) -> None:
        for local_port, remote_port in mappings:
            if not await self._wait_ready():
                self.logger.warning("Gateway busy, skipping mapping %d -> %d", remote_port, local_port)
                continue
            if self.client.add_port_mapping(local_ip, local_port, remote_port) == 0:
                self.mapped.append(remote_port)
        await self._wait_ready()

    async def remove_all(self) -> None:
        for remote_port in list(self.mapped):
            if not await self._wait_ready():
                self.logger.warning("Gateway busy, leaving mapping %d in place", remote_port)
                continue
            if self.client.remove_port_mapping(remote_port) == 0:
                self.mapped.remove(remote_port)
        await self._wait_ready()

    async def run(self) -> None:
        """Scan, add configured mappings, report the external address."""
        gateway = await self.scan()
        if not gateway:
            self.logger.warning("No UPnP gateway ready after %d attempts", self.attempts)
            return
        mappings = parse_mappings(self.config)
        if mappings:
            local_ip = get_local_ip(self.config)
            if not local_ip:
                self.logger.warning("Could not determine local IP. Set local_ip in config.")
            else:
                await self.add_all(local_ip, mappings)
        external = await self.external_address()
        if external:
            address = ipaddress.IPv4Address(external)
            self.logger.info("External address: %s", address)
            for remote_port in self.mapped:
                self.logger.info("Reachable at %s:%d", address, remote_port)


# -----------------------------------------------------------------------------
# Main entry point
# -----------------------------------------------------------------------------

async def main_async(config: dict) -> None:
    """Run the client, the command API and the configured mappings."""
    logger = logging.getLogger("igd-punch")
    transport = AsyncioTransport(logger, config)
    client = IGDClient(transport, logger, config)
    mapper = PortMapper(client, config, logger)

    # Handle shutdown gracefully - must not block event loop or Ctrl-C won't work
    stop_event = asyncio.Event()
    _shutting_down = False

    def shutdown():
        nonlocal _shutting_down
        if _shutting_down:
            logger.warning("Second Ctrl-C: forcing exit")
            os._exit(1)
        _shutting_down = True
        stop_event.set()

    try:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, shutdown)
    except (NotImplementedError, OSError):
        # add_signal_handler not supported on Windows - use signal.signal
        try:
            signal.signal(signal.SIGINT, lambda s, f: shutdown())
            signal.signal(signal.SIGTERM, lambda s, f: shutdown())
        except (ValueError, OSError):
            pass

    api_server = await run_command_api(config, logger, client)
    if api_server:
        logger.info("Command API at http://%s:%d",
                    config.get("api_host", "127.0.0.1"), int(config.get("api_port", 8091)))

    mapper_task = None
    if config.get("scan_on_start", True):
        mapper_task = asyncio.create_task(mapper.run())

    await stop_event.wait()

    logger.info("Shutting down...")
    if mapper_task and not mapper_task.done():
        mapper_task.cancel()
    try:
        if config.get("remove_on_exit", True) and mapper.mapped:
            await asyncio.wait_for(mapper.remove_all(), timeout=10.0)
        if api_server:
            api_server.close()
            await asyncio.wait_for(api_server.wait_closed(), timeout=2.0)
    except asyncio.TimeoutError:
        logger.warning("Shutdown timed out, exiting anyway")
    transport.close_all()


def main() -> int:
    """Parse arguments and run."""
    parser = argparse.ArgumentParser(
        description="igd-punch - UPnP IGD port mapping client"
    )
    parser.add_argument(
        "--config", "-c",
        type=Path,
        default=None,
        help="Path to config YAML (default: config.yaml in project dir)",
    )
    args = parser.parse_args()

    try:
        config = load_config(args.config)
    except FileNotFoundError as e:
        print(str(e), file=sys.stderr)
        return 1
    except ImportError as e:
        print(str(e), file=sys.stderr)
        return 1
    setup_logging(config["log_level"])

    try:
        asyncio.run(main_async(config))
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    sys.exit(main())
