"""Durable storage adapters for the coordination document."""
