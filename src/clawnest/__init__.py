"""clawnest: manage multiple agent gateway instances on processes or containers."""

__version__ = "0.1.0"
