"""
Verification ledger, votes, confidence scoring and consensus over SQLite.
"""
