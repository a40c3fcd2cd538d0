"""
DinElportal MCP Server - Partner support tools over Model Context Protocol.

Exposes the tracking client's building blocks to support staff helping
partners with their integration:
- Click id extraction from landing URLs
- Conversion pattern checks
- Device fingerprint computation
- Embed snippet generation
- Test conversions against the collection endpoint

Usage:
    # Via CLI
    dinelportal-mcp

    # Via Python
    from dinelportal_mcp import server
    server.main()
"""

__version__ = "0.1.0"
