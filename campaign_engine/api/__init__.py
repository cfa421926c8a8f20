"""HTTP API for event intake and enrollment inspection."""
