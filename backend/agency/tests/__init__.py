"""Test suite for the agency backend."""
