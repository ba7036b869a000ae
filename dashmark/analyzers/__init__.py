"""Analyzers that derive run inputs from the source and the system."""
