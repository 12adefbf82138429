"""Pure lifecycle transitions for orders."""
