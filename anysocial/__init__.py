"""Subprocess pipelines that stream social-media downloads over HTTP."""

__version__ = "1.0.0"
