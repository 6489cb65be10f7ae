"""Platform detection and per-family capability profiles."""
