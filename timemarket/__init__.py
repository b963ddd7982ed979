"""
Time Marketplace

A confidential marketplace for time slots:
- Offer ledger with fee split and atomic settlement
- Encrypted input batches authenticated by a single shared proof
- Declassification with verified decryption callbacks
- Off-chain purchase history reconciliation from the event log
"""

__version__ = "0.1.0"
