"""
Certificate watchdog for TLS-serving processes.
"""

__version__ = "0.1.0"
