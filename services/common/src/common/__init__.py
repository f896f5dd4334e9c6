"""Shared helpers: configuration, logging, HTTP and schema base classes."""
