"""
Capsule: sandbox orchestration and chat synchronization server.
"""

__version__ = "0.1.0"
