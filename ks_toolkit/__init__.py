"""Helpers for running KubeSphere on local kind clusters."""

__version__ = "0.1.0"
