"""Relay configuration models and loaders."""
