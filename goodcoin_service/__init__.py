"""
Goodcoin Feed Service - positivity feed ranking and donation ledger
"""
__version__ = "1.0.0"
