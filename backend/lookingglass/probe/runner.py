"""
Runner for the allow-listed diagnostic commands (ping, host, mtr).

Commands are executed without a shell, with a fixed argument vector per
command name, and their stdout/stderr are streamed line by line.
"""

import asyncio
import ipaddress
import logging
import re
import socket
from typing import Any, AsyncIterator, Dict, List, NamedTuple, Optional

import psutil

from ..config import settings
from ..errors import MalformedInputError
from .stream import system_info_message

logger = logging.getLogger(__name__)

COMMANDS: Dict[str, List[str]] = {
    "ping": ["ping", "-c4", "-w15"],
    "ping6": ["ping", "-6", "-c4", "-w15"],
    "host": ["host"],
    "mtr": ["mtr", "-rnz4"],
    "mtr6": ["mtr", "-rnz6"],
    "livemtr": ["mtr", "-ln4"],
}

HOSTNAME_PATTERN = re.compile(r"^(?=.{1,253}$)[A-Za-z0-9](?:[A-Za-z0-9\-_.]*[A-Za-z0-9])?$")


class ProbeOutput(NamedTuple):
    """One piece of command output. ``stream`` is stdout, stderr or exit."""

    stream: str
    text: str
    returncode: Optional[int] = None


def validate_target(target: str) -> str:
    """
    Accept an IPv4/IPv6 literal or a DNS hostname.

    Raises:
        MalformedInputError: For anything else, including option-like strings
    """
    target = (target or "").strip()
    if not target:
        raise MalformedInputError("Target host is required")
    try:
        ipaddress.ip_address(target)
        return target
    except ValueError:
        pass
    if not HOSTNAME_PATTERN.match(target):
        raise MalformedInputError(f"Invalid target host: {target}")
    return target


def build_command(command: str, target: str, cycles: Optional[int] = None) -> List[str]:
    if command not in COMMANDS:
        raise MalformedInputError(f"Invalid command: {command}")
    argv = list(COMMANDS[command])
    if command == "livemtr" and cycles:
        argv += ["-c", str(cycles)]
    argv.append(validate_target(target))
    return argv


def get_system_info() -> Dict[str, Any]:
    """Short hostname and non-loopback addresses of this node, IPv4 first."""
    try:
        hostname = socket.gethostname().split(".")[0]
        v4, v6 = [], []
        for addrs in psutil.net_if_addrs().values():
            for addr in addrs:
                if addr.family not in (socket.AF_INET, socket.AF_INET6):
                    continue
                ip = addr.address.split("%")[0]
                parsed = ipaddress.ip_address(ip)
                if parsed.is_loopback or parsed.is_link_local:
                    continue
                (v4 if parsed.version == 4 else v6).append(ip)
        return {"hostname": hostname, "ips": v4 + v6}
    except Exception as e:
        logger.error(f"Error getting system info: {e}")
        return {"hostname": "unknown", "ips": []}


class ProbeRunner:
    """Execute one allow-listed command and stream its output."""

    def __init__(self, timeout: Optional[float] = None):
        self.timeout = timeout or settings.command_timeout

    async def run(
        self, command: str, target: str, cycles: Optional[int] = None
    ) -> AsyncIterator[ProbeOutput]:
        """
        Run ``command`` against ``target``.

        Yields stdout/stderr lines as they arrive, then a final ``exit`` item
        carrying the return code. The process is killed if the caller stops
        iterating early or the timeout expires.

        Raises:
            MalformedInputError: Unknown command or invalid target
            FileNotFoundError: The underlying binary is not installed
        """
        argv = build_command(command, target, cycles)
        logger.info(f"Running probe: {' '.join(argv)}")
        process = await asyncio.create_subprocess_exec(
            *argv, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE
        )

        queue: asyncio.Queue = asyncio.Queue()

        async def pump(reader, name):
            while True:
                line = await reader.readline()
                if not line:
                    break
                await queue.put(ProbeOutput(name, line.decode("utf-8", errors="replace")))
            await queue.put(None)

        pumps = [
            asyncio.create_task(pump(process.stdout, "stdout")),
            asyncio.create_task(pump(process.stderr, "stderr")),
        ]
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout
        timed_out = False
        try:
            open_pipes = len(pumps)
            while open_pipes:
                remaining = deadline - loop.time()
                try:
                    item = await asyncio.wait_for(queue.get(), max(remaining, 0))
                except asyncio.TimeoutError:
                    timed_out = True
                    break
                if item is None:
                    open_pipes -= 1
                    continue
                yield item

            if timed_out:
                yield ProbeOutput("stderr", f"Command timed out after {self.timeout:.0f}s")
            else:
                returncode = await process.wait()
                yield ProbeOutput("exit", "", returncode)
        finally:
            for task in pumps:
                task.cancel()
            if process.returncode is None:
                process.kill()
                await process.wait()

    async def stream_messages(
        self, command: str, target: str, cycles: Optional[int] = None
    ) -> AsyncIterator[Dict[str, Any]]:
        """Wire messages for the live stream, system info first for live MTR."""
        if command == "livemtr":
            info = get_system_info()
            yield system_info_message(info["hostname"], info["ips"])

        try:
            async for item in self.run(command, target, cycles):
                if item.stream == "stdout":
                    yield {"output": item.text}
                elif item.stream == "stderr":
                    yield {"error": item.text}
                elif item.returncode:
                    yield {"error": f"Command exited with code {item.returncode}"}
        except FileNotFoundError:
            logger.error(f"Probe binary for {command} is not installed")
            yield {"error": f"{COMMANDS[command][0]} is not installed on this server"}
