"""Core infrastructure shared by the service modules."""
