"""Relief Allocation Engine: demand-aware prioritization and dispatch recommendations."""

__version__ = "0.1.0"
