"""Adapters for third-party model clients."""
