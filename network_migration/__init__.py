"""Dynamic equilibrium of a migration model with network help."""

__version__ = "0.1.0"
