"""
Shared utilities for Capsule server.
"""
