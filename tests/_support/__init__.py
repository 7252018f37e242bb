"""Test support helpers shared across hatimer test modules."""
