"""Logical replication: slot administration, supervision and slot reading."""
