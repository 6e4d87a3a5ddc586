"""flocksync: sync church management systems with local ministry profiles."""

__version__ = "0.1.0"
