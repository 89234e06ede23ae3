"""Configuration, errors and identity primitives."""
