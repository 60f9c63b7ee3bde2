"""Semantic code search over git repositories, served over MCP."""

__version__ = "0.1.0"
