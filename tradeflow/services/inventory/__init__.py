"""Inventory reservation."""
