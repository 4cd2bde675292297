"""
CipherChain - append-only, hash-linked ledger for encrypted messages.
"""

__version__ = "0.1.0"
