"""Definition Store: reads and writes workflow definitions."""

from typing import List, Optional

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from ..models.core import (
    NodeKind,
    TriggerType,
    ValidationResult,
    WorkflowDefinition,
    WorkflowSettings,
    WorkflowStatus,
)
from ..storage.database import get_session_factory
from ..storage.models import WorkflowDefinitionModel
from .clock import utc_now, to_naive_utc
from .exceptions import DefinitionValidationError, NotFoundError, StorageError, TemplateRenderError
from .logging import get_logger
from .templating import MessageRenderer

logger = get_logger(__name__)


class DefinitionStore:
    """Manages workflow definitions, their validation and storage.

    The authoring layer owns definition content; the engine only needs to load
    definitions, list the active ones and refuse to activate invalid graphs.
    """

    def __init__(self, session_factory: Optional[sessionmaker] = None,
                 renderer: Optional[MessageRenderer] = None,
                 default_settings: Optional[WorkflowSettings] = None):
        self._session_factory = session_factory or get_session_factory()
        self._renderer = renderer or MessageRenderer()
        # Calendar defaults for stored documents that leave them out
        self._calendar_defaults = (default_settings or WorkflowSettings()).model_dump(
            mode="json", include={"timezone", "business_hours"}
        )

    def save_definition(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        """
        Insert or update a workflow definition.

        Args:
            definition: The definition to store

        Returns:
            WorkflowDefinition: The stored definition with its new version

        Raises:
            DefinitionValidationError: If an active definition fails validation
            StorageError: If storage operation fails
        """
        logger.info(f"Saving workflow definition '{definition.id}' for tenant '{definition.tenant_id}'")

        if definition.status == WorkflowStatus.ACTIVE:
            self._ensure_valid(definition)

        trigger = definition.trigger_node
        try:
            with self._session_factory() as db:
                model = db.get(WorkflowDefinitionModel, definition.id)
                if model is None:
                    version = 1
                    model = WorkflowDefinitionModel(
                        id=definition.id,
                        tenant_id=definition.tenant_id,
                        created_at=to_naive_utc(utc_now())
                    )
                    db.add(model)
                else:
                    if model.tenant_id != definition.tenant_id:
                        raise DefinitionValidationError(
                            f"Workflow '{definition.id}' belongs to another tenant",
                            workflow_id=definition.id
                        )
                    version = model.version + 1

                stored = definition.model_copy(update={"version": version})
                model.name = stored.name
                model.description = stored.description
                model.status = stored.status.value
                model.trigger_type = trigger.config.trigger_type.value if trigger else None
                model.version = version
                document = stored.model_dump(mode="json")
                document["settings"] = stored.settings.model_dump(mode="json", exclude_unset=True)
                model.definition = document
                db.commit()
                result = self._to_definition(model)

            logger.info(f"Stored workflow '{definition.id}' at version {version} ({stored.status.value})")
            return result

        except (DefinitionValidationError, NotFoundError):
            raise
        except SQLAlchemyError as e:
            logger.error(f"Database error while saving workflow: {str(e)}")
            raise StorageError(f"Failed to store workflow: {str(e)}", operation="save_definition",
                               table="workflow_definitions")

    def get_definition(self, workflow_id: str, tenant_id: Optional[str] = None) -> WorkflowDefinition:
        """
        Retrieve a workflow definition by its ID.

        Raises:
            NotFoundError: If the workflow does not exist (for the tenant, when given)
            StorageError: If storage operation fails
        """
        logger.debug(f"Retrieving workflow with ID: {workflow_id}")

        try:
            with self._session_factory() as db:
                model = db.get(WorkflowDefinitionModel, workflow_id)
                if model is None or (tenant_id is not None and model.tenant_id != tenant_id):
                    raise NotFoundError(
                        f"Workflow with ID '{workflow_id}' not found",
                        resource="workflow",
                        resource_id=workflow_id
                    )
                return self._to_definition(model)

        except NotFoundError:
            raise
        except SQLAlchemyError as e:
            logger.error(f"Database error while retrieving workflow: {str(e)}")
            raise StorageError(f"Failed to retrieve workflow: {str(e)}", operation="get_definition",
                               table="workflow_definitions")

    def list_active(self, tenant_id: Optional[str] = None,
                    trigger_type: Optional[TriggerType] = None) -> List[WorkflowDefinition]:
        """List active definitions, optionally narrowed to a tenant and trigger type."""
        return self.list_definitions(tenant_id=tenant_id, trigger_type=trigger_type,
                                     status=WorkflowStatus.ACTIVE)

    def list_definitions(self, tenant_id: Optional[str] = None,
                         trigger_type: Optional[TriggerType] = None,
                         status: Optional[WorkflowStatus] = None) -> List[WorkflowDefinition]:
        try:
            with self._session_factory() as db:
                query = db.query(WorkflowDefinitionModel)
                if status is not None:
                    query = query.filter(WorkflowDefinitionModel.status == WorkflowStatus(status).value)
                if tenant_id is not None:
                    query = query.filter(WorkflowDefinitionModel.tenant_id == tenant_id)
                if trigger_type is not None:
                    query = query.filter(WorkflowDefinitionModel.trigger_type == TriggerType(trigger_type).value)
                models = query.order_by(WorkflowDefinitionModel.created_at, WorkflowDefinitionModel.id).all()

                definitions = []
                for model in models:
                    try:
                        definitions.append(self._to_definition(model))
                    except StorageError as e:
                        # One malformed document must not hide the tenant's other workflows
                        logger.error(f"Skipping unreadable workflow '{model.id}': {e.message}")
                logger.debug(f"Found {len(definitions)} workflows")
                return definitions

        except SQLAlchemyError as e:
            logger.error(f"Database error while listing workflows: {str(e)}")
            raise StorageError(f"Failed to list workflows: {str(e)}", operation="list_definitions",
                               table="workflow_definitions")

    def set_status(self, workflow_id: str, status: WorkflowStatus) -> WorkflowDefinition:
        """Change a definition's status; activation re-validates the graph."""
        definition = self.get_definition(workflow_id)
        status = WorkflowStatus(status)
        if definition.status == status:
            return definition
        logger.info(f"Workflow '{workflow_id}' status {definition.status.value} -> {status.value}")
        return self.save_definition(definition.model_copy(update={"status": status}))

    def validate_definition(self, definition: WorkflowDefinition) -> ValidationResult:
        """
        Validate a definition for structural correctness.

        Args:
            definition: The definition to validate

        Returns:
            ValidationResult: Validation results with errors and warnings
        """
        logger.debug(f"Validating workflow: {definition.id}")

        result = definition.validate_structure()
        errors = list(result.errors)

        for node in definition.nodes:
            if node.kind != NodeKind.MESSAGE:
                continue
            try:
                self._renderer.check_syntax(node)
            except TemplateRenderError as e:
                errors.append(f"Message node '{node.id}': {e.message}")

        final_result = ValidationResult(is_valid=not errors, errors=errors, warnings=result.warnings)
        logger.debug(f"Workflow validation completed. Valid: {final_result.is_valid}, "
                     f"Errors: {len(final_result.errors)}, Warnings: {len(final_result.warnings)}")
        return final_result

    def _ensure_valid(self, definition: WorkflowDefinition):
        result = self.validate_definition(definition)
        if result.warnings:
            logger.warning(f"Workflow '{definition.id}' validation warnings: {'; '.join(result.warnings)}")
        if not result.is_valid:
            error_msg = f"Workflow validation failed: {'; '.join(result.errors)}"
            logger.error(error_msg)
            raise DefinitionValidationError(error_msg, validation_errors=result.errors,
                                            workflow_id=definition.id)

    def _to_definition(self, model: WorkflowDefinitionModel) -> WorkflowDefinition:
        document = dict(model.definition or {})
        document["settings"] = {**self._calendar_defaults, **(document.get("settings") or {})}
        document.update(
            id=model.id,
            tenant_id=model.tenant_id,
            status=model.status,
            version=model.version,
        )
        try:
            return WorkflowDefinition.model_validate(document)
        except ValidationError as e:
            raise StorageError(f"Stored workflow '{model.id}' is malformed: {e}",
                               operation="load_definition", table="workflow_definitions")
