"""Infrastructure layer: broker, cache, relational store, external catalog and metrics."""
