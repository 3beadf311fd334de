from voice_router.evaluation.metrics import MetricsGrouping, RoutingMetrics

__all__ = ["MetricsGrouping", "RoutingMetrics"]
