"""Sandbox runtimes for coding agents, Docker build resources and git tools for applying their changes."""

__version__ = "0.1.0"