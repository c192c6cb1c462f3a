"""Members cache synchronization service for the Caspio members table."""

__version__ = "1.0.0"
