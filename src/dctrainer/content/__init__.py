"""Bundled catalog, question bank, and scenarios."""
