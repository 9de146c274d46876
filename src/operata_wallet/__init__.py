"""Operata Wallet - a custodial wallet operated from Notion."""

__version__ = "0.3.0"
