"""Reasoning loop components."""

from autoreact.react.engine import ReActEngine

__all__ = ["ReActEngine"]
