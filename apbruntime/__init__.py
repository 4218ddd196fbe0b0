"""Run service bundles in sandboxed cluster namespaces and manage their state and credentials."""

__version__ = "0.1.0"