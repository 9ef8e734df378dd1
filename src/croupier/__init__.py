"""Croupier - settlement and disbursement pipeline for the on-chain dice game."""

__version__ = "0.1.0"
