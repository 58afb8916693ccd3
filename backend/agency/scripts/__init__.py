"""Operational scripts for the agency backend."""
