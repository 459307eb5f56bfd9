"""Service adapters, one module per backend (service_*.py)."""
