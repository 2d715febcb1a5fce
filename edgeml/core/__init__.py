"""Core infrastructure shared by the lifecycle and inference packages."""
