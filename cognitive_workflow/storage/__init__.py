"""Database models and catalog storage."""

from .database import Base, create_tables, drop_tables, build_engine, get_session_factory
from .models import InstanceDefinitionModel, IntentDefinitionModel, ObservabilityReportModel
from .catalog_store import CatalogDocument, CatalogStore, DatabaseReportSink, reload_catalog

__all__ = [
    "Base",
    "create_tables",
    "drop_tables",
    "build_engine",
    "get_session_factory",
    "InstanceDefinitionModel",
    "IntentDefinitionModel",
    "ObservabilityReportModel",
    "CatalogDocument",
    "CatalogStore",
    "DatabaseReportSink",
    "reload_catalog",
]
