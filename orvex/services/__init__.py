"""Services package for Orvex."""
from orvex.services.keystore import WalletVault, ScopedSigner, SecretExposure
from orvex.services.user_settings import SettingsStore, UserSettings
from orvex.services.positions import PositionLedger, Position
from orvex.services.pending_actions import PendingActionTracker
from orvex.services.trading import SwapExecutor, TradeRequest, Direction
from orvex.services.router import Router, SubmissionReceipt

__all__ = [
    'WalletVault',
    'ScopedSigner',
    'SecretExposure',
    'SettingsStore',
    'UserSettings',
    'PositionLedger',
    'Position',
    'PendingActionTracker',
    'SwapExecutor',
    'TradeRequest',
    'Direction',
    'Router',
    'SubmissionReceipt',
]
