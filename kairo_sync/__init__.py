"""Realtime conversation synchronization engine for role-play simulations."""

__version__ = "0.1.0"
