"""Per-session memories extracted from conversations."""
