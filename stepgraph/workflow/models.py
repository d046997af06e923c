""" Data models for workflow representation """

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

TEMP_ID_PREFIX = "temp-"


class StepType(str, Enum):
    API_CALL = "api_call"
    API_ENDPOINT = "api_endpoint"
    CONDITIONAL_CHECK = "conditional_check"
    DATA_TRANSFORM = "data_transform"
    SFTP_UPLOAD = "sftp_upload"
    RENAME_FILE = "rename_file"
    EMAIL_ACTION = "email_action"
    USER_CONFIRMATION = "user_confirmation"
    EXIT = "exit"
    AI_LOOKUP = "ai_lookup"
    GOOGLE_PLACES_LOOKUP = "google_places_lookup"
    MULTIPART_FORM_UPLOAD = "multipart_form_upload"


class NodeKind(str, Enum):
    GROUP = "group"
    WORKFLOW = "workflow"


class Handle(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    DEFAULT = ""


class ApplyCondition(str, Enum):
    ALWAYS = "always"
    ON_SUCCESS = "on_success"
    ON_FAILURE = "on_failure"


def is_temporary_id(record_id: Optional[str]) -> bool:
    return bool(record_id) and record_id.startswith(TEMP_ID_PREFIX)


@dataclass
class Step:
    """One entry of a legacy ordered step chain."""
    id: str
    type: StepType
    order: int = 0
    name: str = ""
    config: Dict[str, Any] = field(default_factory=dict)
    enabled: bool = True
    next_on_success: Optional[str] = None
    next_on_failure: Optional[str] = None

    @property
    def is_temporary(self) -> bool:
        return is_temporary_id(self.id)


@dataclass
class Edge:
    id: str
    source: str
    target: str
    source_handle: str = Handle.DEFAULT.value
    target_handle: str = ""
    label: str = ""


@dataclass
class FieldMapping:
    variable_path: str
    apply_condition: ApplyCondition = ApplyCondition.ALWAYS

    def applies_to(self, edge_handle_taken: Optional[str]) -> bool:
        if self.apply_condition == ApplyCondition.ON_SUCCESS:
            return edge_handle_taken == Handle.SUCCESS.value
        if self.apply_condition == ApplyCondition.ON_FAILURE:
            return edge_handle_taken == Handle.FAILURE.value
        return True


@dataclass
class Node:
    id: str
    kind: NodeKind
    label: str = ""
    position: Tuple[float, float] = (0.0, 0.0)
    group_id: Optional[str] = None
    step_type: Optional[StepType] = None
    config: Dict[str, Any] = field(default_factory=dict)
    field_mappings: Dict[str, FieldMapping] = field(default_factory=dict)
    header_content: str = ""
    display_with_previous: bool = False
    enabled: bool = True

    @property
    def is_group(self) -> bool:
        return self.kind == NodeKind.GROUP


@dataclass
class Group:
    id: str
    name: str
    is_array_group: bool = False
    array_min_rows: int = 0
    array_max_rows: Optional[int] = None
    array_field_name: Optional[str] = None
    description: str = ""

    @property
    def array_key(self) -> str:
        """Key the group's rows are submitted under."""
        return self.array_field_name or self.name


@dataclass
class FormField:
    id: str
    group_id: str
    field_key: str
    name: str = ""
    field_type: str = "text"
    is_required: bool = False
    default_value: Optional[str] = None

    @property
    def initial_value(self) -> str:
        """Value used when the form is first opened or restarted."""
        if self.default_value:
            return self.default_value
        if self.field_type == "checkbox":
            return "False"
        return ""

    @property
    def reset_value(self) -> str:
        """Value used when the flow advances onto this field's group.

        Templated defaults are blanked here; field mappings fill them in.
        """
        if self.field_type == "checkbox":
            return "False"
        if not self.default_value or "{{" in self.default_value:
            return ""
        return self.default_value


@dataclass
class Workflow:
    id: str
    name: str = ""
    description: str = ""
    groups: List[Group] = field(default_factory=list)
    fields: List[FormField] = field(default_factory=list)
    steps: List[Step] = field(default_factory=list)
    nodes: List[Node] = field(default_factory=list)
    edges: List[Edge] = field(default_factory=list)

    def group(self, group_id: str) -> Optional[Group]:
        return next((g for g in self.groups if g.id == group_id), None)

    def fields_for(self, group_id: str) -> List[FormField]:
        return [f for f in self.fields if f.group_id == group_id]
