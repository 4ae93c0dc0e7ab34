"""Orvex: custodial Solana wallet and swap engine."""
__version__ = "1.0.0"
