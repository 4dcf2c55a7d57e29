"""Tool servers built on StdioToolServer."""
