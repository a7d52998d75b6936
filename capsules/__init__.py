# capsules/__init__.py
"""Content-addressed file capsules: cheap static analysis, cached once per content, upgraded by enrichment."""

__version__ = "0.1.0"
