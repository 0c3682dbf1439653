"""Core services and cross-cutting concerns.

Submodules are imported directly (``billing_engine.core.errors``,
``billing_engine.core.database`` ...) so that ``billing_engine.config``
can depend on ``billing_engine.core.constants`` without an import cycle.
"""
