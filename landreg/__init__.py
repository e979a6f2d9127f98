"""
Land Registry Governance

Proposal and voting engine mirroring an on-chain governor contract.
"""

__version__ = "1.0.0"
