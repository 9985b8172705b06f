"""Core package of privfeed: errors, hashing and ledger records."""
