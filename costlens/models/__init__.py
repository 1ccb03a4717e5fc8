# Import all models so Base.metadata is complete for create_all and Alembic
from costlens.models.ingestion_job import IngestionJob, IngestionStatus
from costlens.models.billing import LineItem
from costlens.models.aggregate import Aggregate, AggregationType
from costlens.models.anomaly import Anomaly, AnomalySeverity, AnomalyType
from costlens.models.recommendation import (
    ImplementationEffort,
    Recommendation,
    RecommendationPriority,
    RecommendationStatus,
    RecommendationType,
)

__all__ = [
    "Aggregate",
    "AggregationType",
    "Anomaly",
    "AnomalySeverity",
    "AnomalyType",
    "ImplementationEffort",
    "IngestionJob",
    "IngestionStatus",
    "LineItem",
    "Recommendation",
    "RecommendationPriority",
    "RecommendationStatus",
    "RecommendationType",
]
