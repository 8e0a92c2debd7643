"""Live Solana holdings cache with provider refresh and event replay."""

__version__ = "0.1.0"
