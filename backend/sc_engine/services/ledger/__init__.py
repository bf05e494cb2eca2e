"""
SC Wallet Ledger

Atomic, append-only balance accounting for division and user wallets.
"""

from .wallet_ledger import WalletLedger, SYSTEM_WALLET_DIVISION, TRANSFER_LIMIT_SC

__all__ = [
    'WalletLedger',
    'SYSTEM_WALLET_DIVISION',
    'TRANSFER_LIMIT_SC',
]
