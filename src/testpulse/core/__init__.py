# src/testpulse/core/__init__.py
"""Core infrastructure: logging, settings, build context."""
