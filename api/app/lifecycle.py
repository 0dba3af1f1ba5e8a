"""Form instance state and its lifecycle rules.

The functions here never touch storage: they take an ``InstanceState`` and
return a new one. ``app.instances`` loads and saves the rows around them.
"""
import logging
from enum import Enum
from typing import Dict, List, Optional, Union

from pydantic import BaseModel, Field

from .fields import Template
from .mapping import (
    MissingField,
    find_missing_required_manual_fields,
    partition_fields,
    requires_signature,
)

logger = logging.getLogger(__name__)


class InstanceStatus(str, Enum):
    DRAFT = "Draft"
    IN_PROGRESS = "InProgress"
    COMPLETED = "Completed"
    # completed for a workflow request and moved onto the participant
    MIGRATED = "Migrated"


FINISHED_STATUSES = (InstanceStatus.COMPLETED, InstanceStatus.MIGRATED)


class InstanceState(BaseModel):
    id: Optional[int] = None
    template_id: Union[int, str]
    subject_type: str = "participant"
    subject_id: str
    values: Dict[str, str] = Field(default_factory=dict)
    signature_ref: Optional[str] = None
    status: InstanceStatus = InstanceStatus.DRAFT
    output_ref: Optional[str] = None


class FormValidationError(Exception):
    """Base for problems detected before any external call is made."""

    code = "validation_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class MissingRequiredFields(FormValidationError):
    code = "missing_required_fields"

    def __init__(self, missing: List[MissingField]):
        labels = ", ".join(m.label for m in missing)
        super().__init__(f"Please complete all required fields: {labels}")
        self.missing = list(missing)


class MissingSignature(FormValidationError):
    code = "missing_signature"

    def __init__(self):
        super().__init__("Signature is required.")


class AlreadyCompleted(FormValidationError):
    code = "already_completed"

    def __init__(self, output_ref: Optional[str] = None):
        super().__init__("This form has already been completed.")
        self.output_ref = output_ref


class ExternalServiceFailure(Exception):
    """The renderer or object storage failed; the caller may retry."""


def _advance(status: InstanceStatus) -> InstanceStatus:
    if status == InstanceStatus.DRAFT:
        return InstanceStatus.IN_PROGRESS
    return status


def new_instance(subject_type: str, subject_id: str, template_id) -> InstanceState:
    return InstanceState(subject_type=subject_type, subject_id=str(subject_id), template_id=template_id)


def record_manual_value(state: InstanceState, key: str, value) -> InstanceState:
    values = dict(state.values)
    values[key] = "" if value is None else str(value).strip()
    return state.model_copy(update={"values": values, "status": _advance(state.status)})


def record_manual_values(state: InstanceState, values: Dict[str, object]) -> InstanceState:
    for key, value in (values or {}).items():
        state = record_manual_value(state, key, value)
    return state


def record_signature(state: InstanceState, signature_ref: str) -> InstanceState:
    return state.model_copy(update={"signature_ref": signature_ref, "status": _advance(state.status)})


def can_submit_for_generation(state: InstanceState, template: Template) -> Optional[FormValidationError]:
    """Return the first reason generation must not run, or None."""
    if state.status in FINISHED_STATUSES:
        return AlreadyCompleted(state.output_ref)
    manual_fields = partition_fields(template).manual_fields
    missing = find_missing_required_manual_fields(manual_fields, state.values)
    if missing:
        return MissingRequiredFields(missing)
    if requires_signature(template) and not state.signature_ref:
        return MissingSignature()
    return None


def ensure_can_submit(state: InstanceState, template: Template) -> None:
    error = can_submit_for_generation(state, template)
    if error is not None:
        logger.info("instance %s not ready for generation: %s", state.id, error.code)
        raise error


def mark_completed(state: InstanceState, output_ref: str) -> InstanceState:
    if state.status in FINISHED_STATUSES:
        raise AlreadyCompleted(state.output_ref)
    return state.model_copy(update={"status": InstanceStatus.COMPLETED, "output_ref": output_ref})
