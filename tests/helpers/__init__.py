"""Shared test doubles for the segment engine test suite."""
