"""Core supervision and scheduling components for Agentvisor."""
