"""Test suite for MCP Gateway."""
