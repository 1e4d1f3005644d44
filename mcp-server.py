#!/usr/bin/env python3
"""
SSH MCP gateway launcher.

Serves MCP over HTTP (SSE or Streamable HTTP) and runs each `exec` call
over its own SSH connection:

  python mcp-server.py --transport=sse --listen-port=3001 --host=1.2.3.4 --user=root --password=pass --timeout=5000
  python mcp-server.py --transport=stream --host=1.2.3.4 --ssh-port=2222 --user=root --key=~/.ssh/id_ed25519
"""

from ssh_gateway.main import main

if __name__ == "__main__":
    main()
