"""Broadcast-encryption key engine: epoch chain, key tree, grant, revocation,
follower key store and per-post encryption."""
