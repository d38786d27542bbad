"""Local-first cache, sync and quota layer for the Penpal app."""
