"""
Tavern Launcher - A local control plane for SillyTavern installations.

Supervises the SillyTavern server process, manages installed versions and
their user data, and runs a key-rotating API aggregation proxy.
"""

__version__ = "0.1.0"
