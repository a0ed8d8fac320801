"""Configuration, errors and the pure scoring and decision logic."""
