"""Vendor integrations: scheduling table, connectors, content hashing."""
