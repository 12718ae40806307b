"""
ShieldFlow - a shielded value-transfer engine on secp256k1.

Key features:
- Layered key hierarchy (spending key -> viewing key -> ivk)
- Unlinkable diversified addresses, plus stealth addresses for transparent chains
- Pedersen note and value commitments with homomorphic balance checking
- Nullifier-based double-spend protection
- Append-only note-commitment tree with witness tracking
- Trial decryption of encrypted outputs
- Transaction assembly against a pluggable zero-knowledge proof gateway
"""

__version__ = "0.1.0"
__all__ = [
    "crypto_utils",
    "curve",
    "keys",
    "address",
    "stealth",
    "commitments",
    "note",
    "note_store",
    "merkle",
    "decryptor",
    "proofs",
    "transaction",
    "builder",
    "validator",
    "engine",
]
