"""Token auto-detection: contract classification and discovery."""

from walletwatch.detection.classifier import ContractClassifier
from walletwatch.detection.engine import PhaseState, PhaseTask, TokenAutoDetector
from walletwatch.detection.history import ExplorerHistoryProvider, InteractionHistory

__all__ = [
    "ContractClassifier",
    "ExplorerHistoryProvider",
    "InteractionHistory",
    "PhaseState",
    "PhaseTask",
    "TokenAutoDetector",
]
