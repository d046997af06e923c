""" Factory for creating step handlers based on node step type. """
from typing import Dict, Optional, Type

from ..steps.api import ApiCallStep, ApiEndpointStep, MultipartFormUploadStep
from ..steps.base import BaseStep, StepEnvironment
from ..steps.conditional import ConditionalCheckStep
from ..steps.files import RenameFileStep, SftpUploadStep
from ..steps.interaction import ExitStep, UserConfirmationStep
from ..steps.lookup import AiLookupStep, GooglePlacesLookupStep
from ..steps.notification import EmailActionStep
from ..steps.transform import DataTransformStep
from .models import Node, StepType
from .schema import validate_step_config

_HANDLER_MAP: Dict[StepType, Type[BaseStep]] = {
    StepType.API_CALL: ApiCallStep,
    StepType.API_ENDPOINT: ApiEndpointStep,
    StepType.CONDITIONAL_CHECK: ConditionalCheckStep,
    StepType.DATA_TRANSFORM: DataTransformStep,
    StepType.SFTP_UPLOAD: SftpUploadStep,
    StepType.RENAME_FILE: RenameFileStep,
    StepType.EMAIL_ACTION: EmailActionStep,
    StepType.USER_CONFIRMATION: UserConfirmationStep,
    StepType.EXIT: ExitStep,
    StepType.AI_LOOKUP: AiLookupStep,
    StepType.GOOGLE_PLACES_LOOKUP: GooglePlacesLookupStep,
    StepType.MULTIPART_FORM_UPLOAD: MultipartFormUploadStep,
}

_missing = set(StepType) - set(_HANDLER_MAP)
if _missing:
    raise RuntimeError(f"No step handler for: {sorted(t.value for t in _missing)}")


def make_step_handler(node: Node, env: Optional[StepEnvironment] = None) -> BaseStep:
    if node.is_group or node.step_type is None:
        raise ValueError(f"Node {node.id} is not a workflow step")

    cls = _HANDLER_MAP.get(StepType(node.step_type))
    if not cls:
        raise ValueError(f"Unsupported step type: {node.step_type}")

    config = validate_step_config(node.step_type, node.config)
    return cls(node.id, node.label, config, env)
