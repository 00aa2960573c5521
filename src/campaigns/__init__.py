"""Campaign lifecycle: activation gating, pause and archive."""
