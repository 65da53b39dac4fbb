"""Storage adapters for the merge engine."""
