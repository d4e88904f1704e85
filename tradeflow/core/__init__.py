"""
Core package for configuration, logging, errors and security helpers.
"""
