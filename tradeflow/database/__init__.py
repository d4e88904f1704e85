"""
Database package: declarative base, async engine and ORM models.
"""
