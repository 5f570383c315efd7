"""Group chat job worker with prepaid quota reservations."""

__version__ = "0.3.0"
