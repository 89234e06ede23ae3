"""Small helpers shared across formstr_core."""
