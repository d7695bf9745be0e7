"""Two-tier client cache with backup and recovery for the roofing CRM."""

__version__ = "1.0.0"
