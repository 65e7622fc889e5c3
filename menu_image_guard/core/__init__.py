"""
Core modules for the menu image pipeline.

This package contains title normalization, the membership gate, the image
cache, the budget ledger, the failure policy and the pipeline controller.
"""
