"""Bundled lab scenarios."""
