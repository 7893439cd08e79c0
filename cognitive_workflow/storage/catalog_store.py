"""Persistent catalog of instance and intent definitions, plus report storage."""

from typing import Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from ..core.exceptions import NotFoundError, StorageError
from ..core.intent_catalog import IntentCatalog
from ..core.logging import get_logger
from ..core.registry import NodesRegistry, WorkflowsRegistry
from ..models.core import (
    InstanceDefinition,
    InstanceKind,
    IntentDefinition,
    NodeInstance,
    WorkflowInstance,
    parse_instance,
)
from ..models.observability import ObservabilityReport
from .models import InstanceDefinitionModel, IntentDefinitionModel, ObservabilityReportModel

logger = get_logger(__name__)


class CatalogDocument(BaseModel):
    """Portable catalog file: instances and intents in one JSON document."""
    nodes: List[NodeInstance] = Field(default_factory=list)
    workflows: List[WorkflowInstance] = Field(default_factory=list)
    intents: List[IntentDefinition] = Field(default_factory=list)


class CatalogStore:
    """Loads and persists catalog records as JSON rows.

    Each instance is stored once per ``(id, version)``; the ``kind`` column
    selects the right model when the row is read back.
    """

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def load_instances(self, kind: Optional[InstanceKind] = None) -> List[InstanceDefinition]:
        """Load every stored instance, optionally of one kind.

        Raises:
            StorageError: If the rows cannot be read or fail validation
        """
        db = self.session_factory()
        try:
            query = db.query(InstanceDefinitionModel)
            if kind is not None:
                query = query.filter(InstanceDefinitionModel.kind == kind.value)
            rows = query.order_by(InstanceDefinitionModel.id).all()
            definitions = [parse_instance(row.definition) for row in rows]
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to load instances: {str(e)}", operation="load_instances",
                               table=InstanceDefinitionModel.__tablename__)
        except ValidationError as e:
            raise StorageError(f"Stored instance definition is invalid: {str(e)}", operation="load_instances",
                               table=InstanceDefinitionModel.__tablename__)
        finally:
            db.close()

        logger.info(f"Loaded {len(definitions)} instance definition(s) from the catalog store")
        return definitions

    def save_instance(self, definition: InstanceDefinition) -> None:
        """Insert or replace one instance version."""
        db = self.session_factory()
        try:
            row = db.query(InstanceDefinitionModel).filter(
                InstanceDefinitionModel.instance_id == definition.id,
                InstanceDefinitionModel.version == definition.version,
            ).first()
            payload = definition.model_dump(mode="json")
            if row is None:
                row = InstanceDefinitionModel(
                    instance_id=definition.id,
                    version=definition.version,
                    kind=definition.kind.value,
                    enabled=definition.enabled,
                    definition=payload,
                )
                db.add(row)
            else:
                row.kind = definition.kind.value
                row.enabled = definition.enabled
                row.definition = payload
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise StorageError(f"Failed to save instance '{definition.id}': {str(e)}", operation="save_instance",
                               table=InstanceDefinitionModel.__tablename__)
        finally:
            db.close()

        logger.debug(f"Saved {definition.kind.value} '{definition.id}' v{definition.version}")

    def delete_instance(self, instance_id: str, version: Optional[str] = None) -> int:
        """Delete one version, or every version when ``version`` is None. Returns rows deleted."""
        db = self.session_factory()
        try:
            query = db.query(InstanceDefinitionModel).filter(InstanceDefinitionModel.instance_id == instance_id)
            if version is not None:
                query = query.filter(InstanceDefinitionModel.version == version)
            deleted = query.delete()
            db.commit()
            return deleted
        except SQLAlchemyError as e:
            db.rollback()
            raise StorageError(f"Failed to delete instance '{instance_id}': {str(e)}", operation="delete_instance",
                               table=InstanceDefinitionModel.__tablename__)
        finally:
            db.close()

    def set_active(self, instance_id: str, version: Optional[str]) -> None:
        """Pin ``version`` of ``instance_id``, or clear the pin when ``version`` is None.

        Raises:
            NotFoundError: If the version is not stored
        """
        db = self.session_factory()
        try:
            rows = db.query(InstanceDefinitionModel).filter(
                InstanceDefinitionModel.instance_id == instance_id
            ).all()
            if version is not None and not any(row.version == version for row in rows):
                raise NotFoundError(f"Instance '{instance_id}' version {version} is not stored",
                                    instance_id=instance_id, version=version)
            for row in rows:
                row.active = row.version == version
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise StorageError(f"Failed to pin instance '{instance_id}': {str(e)}", operation="set_active",
                               table=InstanceDefinitionModel.__tablename__)
        finally:
            db.close()

        logger.info(f"Pinned '{instance_id}' to version {version}" if version else f"Unpinned '{instance_id}'")

    def load_pins(self, kind: Optional[InstanceKind] = None) -> Dict[str, str]:
        """Map of instance id to pinned version."""
        db = self.session_factory()
        try:
            query = db.query(InstanceDefinitionModel).filter(InstanceDefinitionModel.active.is_(True))
            if kind is not None:
                query = query.filter(InstanceDefinitionModel.kind == kind.value)
            return {row.instance_id: row.version for row in query.all()}
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to load pins: {str(e)}", operation="load_pins",
                               table=InstanceDefinitionModel.__tablename__)
        finally:
            db.close()

    def import_document(self, document: CatalogDocument) -> Dict[str, int]:
        """Save every definition of ``document``, replacing stored versions with the same key."""
        for definition in [*document.nodes, *document.workflows]:
            self.save_instance(definition)
        for intent in document.intents:
            self.save_intent(intent)
        counts = {"nodes": len(document.nodes), "workflows": len(document.workflows), "intents": len(document.intents)}
        logger.info(f"Imported catalog document: {counts}")
        return counts

    def load_intents(self) -> List[IntentDefinition]:
        db = self.session_factory()
        try:
            rows = db.query(IntentDefinitionModel).order_by(IntentDefinitionModel.created_at,
                                                            IntentDefinitionModel.id).all()
            intents = [IntentDefinition.model_validate(row.definition) for row in rows]
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to load intents: {str(e)}", operation="load_intents",
                               table=IntentDefinitionModel.__tablename__)
        except ValidationError as e:
            raise StorageError(f"Stored intent definition is invalid: {str(e)}", operation="load_intents",
                               table=IntentDefinitionModel.__tablename__)
        finally:
            db.close()

        logger.info(f"Loaded {len(intents)} intent(s) from the catalog store")
        return intents

    def save_intent(self, intent: IntentDefinition) -> None:
        db = self.session_factory()
        try:
            row = db.get(IntentDefinitionModel, intent.id)
            payload = intent.model_dump(mode="json")
            if row is None:
                db.add(IntentDefinitionModel(
                    id=intent.id,
                    label=intent.label,
                    workflow_id=intent.workflow_id,
                    definition=payload,
                ))
            else:
                row.label = intent.label
                row.workflow_id = intent.workflow_id
                row.definition = payload
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise StorageError(f"Failed to save intent '{intent.id}': {str(e)}", operation="save_intent",
                               table=IntentDefinitionModel.__tablename__)
        finally:
            db.close()

    def save_report(self, report: ObservabilityReport) -> None:
        """Persist one finalized report tree as a single row."""
        db = self.session_factory()
        try:
            db.add(ObservabilityReportModel(
                id=report.report_id,
                stage=report.stage.value,
                name=report.name,
                success=report.success,
                started_at=report.started_at,
                duration_seconds=report.duration.total_seconds(),
                total_tokens=report.payload.token_usage.total_tokens,
                error_message=(report.error or {}).get("message"),
                report=report.model_dump(mode="json"),
            ))
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise StorageError(f"Failed to save report '{report.report_id}': {str(e)}", operation="save_report",
                               table=ObservabilityReportModel.__tablename__)
        finally:
            db.close()

    def load_report(self, report_id: str) -> Optional[ObservabilityReport]:
        db = self.session_factory()
        try:
            row = db.get(ObservabilityReportModel, report_id)
            return ObservabilityReport.model_validate(row.report) if row is not None else None
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to load report '{report_id}': {str(e)}", operation="load_report",
                               table=ObservabilityReportModel.__tablename__)
        finally:
            db.close()


class DatabaseReportSink:
    """Report sink writing each request's report tree to the catalog database."""

    def __init__(self, store: CatalogStore):
        self.store = store

    def emit(self, report: ObservabilityReport) -> None:
        self.store.save_report(report)


def reload_catalog(
    store: CatalogStore,
    nodes: NodesRegistry,
    workflows: WorkflowsRegistry,
    catalog: IntentCatalog,
) -> Dict[str, int]:
    """Replace the registries' and intent catalog's contents with the stored catalog.

    Each registry is swapped in a single publish, so concurrent resolves never
    see it empty. Stored pins are restored.
    """
    node_definitions = store.load_instances(InstanceKind.NODE)
    workflow_definitions = store.load_instances(InstanceKind.WORKFLOW)
    intents = store.load_intents()

    nodes.replace_all(node_definitions, store.load_pins(InstanceKind.NODE))
    workflows.replace_all(workflow_definitions, store.load_pins(InstanceKind.WORKFLOW))
    catalog.reload(intents)

    counts = {"nodes": len(node_definitions), "workflows": len(workflow_definitions), "intents": len(intents)}
    logger.info(f"Catalog reloaded: {counts}")
    return counts
