#!/usr/bin/env python3
"""
Looking Glass MCP Server
Implementation using FastMCP.

Provides AI assistants with tools to run network probes, live MTR reports and
throughput tests through a standardized Model Context Protocol interface.
"""
import os
import sys
from typing import Optional

# Add backend to path for package imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'backend'))

import httpx
from mcp.server.fastmcp import FastMCP

from lookingglass.config import settings
from lookingglass.errors import MalformedInputError
from lookingglass.probe.enrichment import AsnEnricher
from lookingglass.probe.runner import COMMANDS, ProbeRunner, build_command
from lookingglass.probe.session import MtrSession, format_report
from lookingglass.speedtest.runner import TEST_SIZES, SpeedTestRunner

# Initialize FastMCP server
mcp = FastMCP(name="looking-glass")

_enricher: Optional[AsnEnricher] = None


def get_runner() -> ProbeRunner:
    """Get a probe runner."""
    return ProbeRunner()


def get_enricher() -> AsnEnricher:
    """Get the shared enricher, created on first use."""
    global _enricher
    if _enricher is None:
        _enricher = AsnEnricher()
    return _enricher


def get_http_client(base_url: str) -> httpx.AsyncClient:
    """Get an HTTP client for a looking glass instance."""
    return httpx.AsyncClient(base_url=base_url, timeout=settings.request_timeout)


# ========== TOOLS ==========

@mcp.tool()
async def run_probe(target: str, command: str = "ping") -> str:
    """Run a one-shot network diagnostic against a target host.

    Args:
        target: Hostname or IP address to probe
        command: One of ping, ping6, host, mtr, mtr6 (default: ping)

    Returns:
        The command output, followed by any errors
    """
    if command not in COMMANDS or command == "livemtr":
        allowed = ", ".join(c for c in COMMANDS if c != "livemtr")
        return f"Invalid command: {command}. Valid options: {allowed}"
    try:
        argv = build_command(command, target)
    except MalformedInputError as e:
        return f"Invalid target: {e.message}"

    result = f"$ {' '.join(argv)}\n"
    errors = []
    async for message in get_runner().stream_messages(command, target):
        if "output" in message:
            result += message["output"].rstrip("\n") + "\n"
        elif "error" in message:
            errors.append(message["error"].rstrip("\n"))

    if errors:
        result += "\nErrors:\n"
        for error in errors:
            result += f"  {error}\n"
    return result


@mcp.tool()
async def live_mtr(target: str, cycles: int = 10, show_hidden: bool = False) -> str:
    """Run a bounded live MTR and summarise it per hop.

    Args:
        target: Hostname or IP address to trace
        cycles: Number of probe rounds (1-1000, default: 10)
        show_hidden: Include hops that repeat the previous hop's address

    Returns:
        Formatted per-hop table with loss and latency statistics
    """
    if not 1 <= cycles <= 1000:
        return f"Invalid cycles: {cycles}. Must be between 1 and 1000"
    try:
        build_command("livemtr", target, cycles)
    except MalformedInputError as e:
        return f"Invalid target: {e.message}"

    session = MtrSession(target, enricher=get_enricher())
    snapshot = await session.consume(get_runner().stream_messages("livemtr", target, cycles))

    result = f"Live MTR to {target} ({snapshot.state})\n"
    if snapshot.source_hostname:
        result += f"Source: {snapshot.source_hostname}"
        if snapshot.source_ips:
            result += f" ({', '.join(snapshot.source_ips)})"
        result += "\n"
    result += "=" * 50 + "\n\n"

    if snapshot.hops:
        return result + format_report(snapshot, include_hidden=show_hidden) + "\n"

    result += "No hops recorded.\n"
    if snapshot.error:
        result += f"Error: {snapshot.error}\n"
    return result


@mcp.tool()
async def speed_test(base_url: str = "http://localhost:8000", size: str = "small") -> str:
    """Measure download and upload throughput against a looking glass server.

    Args:
        base_url: Base URL of the looking glass API (default: http://localhost:8000)
        size: Test size: small, medium, large, or timed for a fixed-duration
            test with adaptive chunk sizes (default: small)

    Returns:
        Download and upload speed in Mbps, or the failure reason
    """
    if size != "timed" and size not in TEST_SIZES:
        return f"Invalid size: {size}. Valid options: {', '.join(TEST_SIZES)}, timed"

    async with get_http_client(base_url) as client:
        runner = SpeedTestRunner(client)
        if size == "timed":
            result = await runner.run_timed()
        else:
            result = await runner.run(size)

    text = f"Speed Test ({size}) against {base_url}\n"
    text += "=" * 50 + "\n\n"
    if size == "timed":
        text += f"Duration per direction: {settings.timed_test_duration:.0f}s\n\n"
    else:
        volumes = TEST_SIZES[size]
        text += f"Download volume: {volumes.download_bytes // (1024 * 1024)} MiB\n"
        text += f"Upload volume: {volumes.upload_bytes // (1024 * 1024)} MiB\n\n"
    if result.download_mbps is not None:
        text += f"Download: {result.download_mbps:.2f} Mbps\n"
    if result.upload_mbps is not None:
        text += f"Upload: {result.upload_mbps:.2f} Mbps\n"
    if not result.ok:
        text += f"\nFailed ({result.error_category}): {result.error_message}\n"
    return text


# ========== SERVER ENTRY POINT ==========

def main():
    """Run the MCP server with stdio transport."""
    mcp.run(transport='stdio')


if __name__ == "__main__":
    main()
