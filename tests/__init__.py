"""Test package marker so pytest resolves ``tests.unit`` and ``tests.e2e`` deterministically."""
