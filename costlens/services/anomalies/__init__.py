from .detector import AnomalyDetector

__all__ = ["AnomalyDetector"]
