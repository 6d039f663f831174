"""Core configuration and pure game logic."""
