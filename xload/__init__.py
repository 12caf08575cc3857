"""0xLoad - sustained transaction load generator for EVM RPC endpoints."""

__version__ = "1.0.0"
