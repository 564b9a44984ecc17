from refap.evaluation.metrics import ChatMetrics

__all__ = ["ChatMetrics"]
