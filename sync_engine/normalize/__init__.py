"""Vendor-to-canonical mapping rules."""
