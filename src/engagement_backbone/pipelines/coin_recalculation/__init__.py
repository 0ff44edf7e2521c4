from .processor import CoinRecalculationProcessor, build_coin_worker, managers_for
from .queue import COIN_QUEUE_CONFIG, CoinRecalculationQueue

__all__ = [
    "CoinRecalculationQueue",
    "CoinRecalculationProcessor",
    "COIN_QUEUE_CONFIG",
    "build_coin_worker",
    "managers_for",
]
