"""Teleporter cross-chain message ingestion for the l1beat dashboard backend."""

__version__ = "0.1.0"
