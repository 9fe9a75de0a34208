"""Kernel domain primitives."""
