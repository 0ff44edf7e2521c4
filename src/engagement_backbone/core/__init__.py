"""Core layer: exceptions, logging and resilience helpers."""
