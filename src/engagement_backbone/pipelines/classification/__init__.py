from .processor import ClassificationProcessor, build_classification_worker
from .queue import CLASSIFICATION_QUEUE_CONFIG, ClassificationQueue

__all__ = [
    "ClassificationQueue",
    "ClassificationProcessor",
    "CLASSIFICATION_QUEUE_CONFIG",
    "build_classification_worker",
]
