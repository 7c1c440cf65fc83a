#!/usr/bin/env python3
"""
Looking Glass MCP Server - HTTP Transport

Serves the same FastMCP tools over SSE so a remote assistant can reach them.
Bind address and port come from ``MCP_HOST`` and ``MCP_PORT``.
"""
import os

from server import mcp


def main():
    import uvicorn

    host = os.environ.get("MCP_HOST", "0.0.0.0")
    port = int(os.environ.get("MCP_PORT", "8001"))

    print("🚀 Starting Looking Glass MCP Server (HTTP/SSE Transport)")
    print(f"📡 Listening on http://{host}:{port}")
    print("🔧 Available tools: run_probe, live_mtr, speed_test")
    print(f"   - SSE:    http://localhost:{port}/sse")
    print()

    uvicorn.run(mcp.sse_app(), host=host, port=port)


if __name__ == "__main__":
    main()
