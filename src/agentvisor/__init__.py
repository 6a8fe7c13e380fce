"""Agentvisor - supervisor and scheduler for AI coding agent CLIs."""

__version__ = "0.1.0"
