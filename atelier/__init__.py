"""atelier — plan / execute / verify coding agent with a reversible change ledger."""

__version__ = "0.1.0"
