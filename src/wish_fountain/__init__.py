"""Wish Fountain: provably-fair fountain gambling service."""

__version__ = "0.1.0"
