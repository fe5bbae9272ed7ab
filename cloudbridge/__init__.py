"""Bridge between a local file system interface and a remote cloud storage namespace."""
