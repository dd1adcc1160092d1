"""Wire-level constants for the realtime and pub/sub protocols."""
