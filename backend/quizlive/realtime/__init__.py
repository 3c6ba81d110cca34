"""Change feed, per-session channels and the views built on them."""
