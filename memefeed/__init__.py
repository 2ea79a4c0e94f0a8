"""Snapshot cache and SSE fan-out for Solana meme-coin token feeds."""

__version__ = "0.3.0"

__all__ = ["__version__"]
