"""
Persistence for the image cache, budget ledger and groups.
"""
