""" Per-step-type configuration models and their validation. """
import json
import re
from typing import Any, Dict, Iterable, List, Literal, Optional, Tuple, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel

from ..errors import WorkflowValidationError
from .guards import canonical_operator
from .models import StepType
from .templating import TOKEN_PATTERN

ArrayMode = Literal["none", "loop", "batch", "single_array", "conditional_hardcode"]


def _rename(raw: Dict[str, Any], legacy: str, current: str) -> None:
    if legacy in raw:
        value = raw.pop(legacy)
        if raw.get(current) in (None, ""):
            raw[current] = value


def _json_object(value: Any) -> Any:
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return {}
        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            raise ValueError(f"expected a JSON object: {e.msg}") from e
    return value


def _header_map(value: Any) -> Any:
    """Headers from a dict or JSON blob, with scalar values stringified."""
    parsed = _json_object(value) or {}
    if not isinstance(parsed, dict):
        return parsed
    return {str(name): str(header) for name, header in parsed.items() if header is not None}


class ConfigModel(BaseModel):
    """Base for step configs: camelCase on the wire, snake_case in Python."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)

    def json_templates(self) -> Iterable[Tuple[str, str]]:
        """(field, text) pairs that must parse as JSON once tokens are blanked."""
        return ()


class ResponseDataMapping(ConfigModel):
    response_path: str
    update_path: str


class BodyFieldMapping(ConfigModel):
    field_name: str
    type: Literal["hardcoded", "variable"] = "hardcoded"
    value: Any = ""
    data_type: Literal["string", "integer", "number", "boolean"] = "string"


class ConditionalArrayMapping(ConfigModel):
    id: Optional[str] = None
    variable: str = ""
    operator: Literal["equals", "not_equals", "contains", "not_contains"] = "equals"
    expected_value: Any = ""
    field_mappings: List[BodyFieldMapping] = Field(default_factory=list)


class PathVariable(ConfigModel):
    value: str = ""
    enabled: bool = True

    @model_validator(mode="before")
    @classmethod
    def _from_plain_string(cls, raw: Any) -> Any:
        if isinstance(raw, str):
            return {"value": raw}
        return raw


class QueryParameter(PathVariable):
    pass


class ApiStepConfig(ConfigModel):
    method: str = "POST"
    url: str = ""
    headers: Dict[str, str] = Field(default_factory=lambda: {"Content-Type": "application/json"})
    request_body: str = ""
    escape_single_quotes_in_body: bool = False
    response_data_mappings: List[ResponseDataMapping] = Field(default_factory=list)
    request_body_field_mappings: List[BodyFieldMapping] = Field(default_factory=list)

    array_processing_mode: ArrayMode = "none"
    array_source_group_id: Optional[str] = None
    stop_on_error: bool = True
    wrap_body_in_array: bool = False
    batch_placeholder: str = "arrayData"
    conditional_array_mappings: List[ConditionalArrayMapping] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _normalize_legacy(cls, raw: Any) -> Any:
        if not isinstance(raw, dict):
            return raw
        raw = dict(raw)
        _rename(raw, "httpMethod", "method")
        _rename(raw, "requestBodyTemplate", "requestBody")
        legacy_path = raw.pop("responseDataPath", None)
        legacy_update = raw.pop("updateJsonPath", None)
        if legacy_path and legacy_update:
            mappings = list(raw.get("responseDataMappings") or [])
            mappings.append({"responsePath": legacy_path, "updatePath": legacy_update})
            raw["responseDataMappings"] = mappings
        return raw

    @field_validator("method")
    @classmethod
    def _upper_method(cls, value: str) -> str:
        return (value or "POST").upper()

    @field_validator("headers", mode="before")
    @classmethod
    def _parse_headers(cls, value: Any) -> Any:
        return _header_map(value)

    @field_validator("response_data_mappings", mode="before")
    @classmethod
    def _drop_incomplete_mappings(cls, value: Any) -> Any:
        if not isinstance(value, list):
            return value
        kept = []
        for entry in value:
            if isinstance(entry, dict):
                source = entry.get("responsePath") or entry.get("response_path")
                target = entry.get("updatePath") or entry.get("update_path")
                if not (source and target):
                    continue
            kept.append(entry)
        return kept

    def json_templates(self) -> Iterable[Tuple[str, str]]:
        if self.request_body:
            yield "requestBody", self.request_body


class ApiCallConfig(ApiStepConfig):
    pass


class ApiEndpointConfig(ApiStepConfig):
    method: str = "GET"
    api_path: str = ""
    path_variable_config: Dict[str, PathVariable] = Field(default_factory=dict)
    query_parameter_config: Dict[str, QueryParameter] = Field(default_factory=dict)
    api_source_type: Literal["main", "secondary"] = "main"
    secondary_api_id: Optional[str] = None

    @field_validator("path_variable_config", "query_parameter_config", mode="before")
    @classmethod
    def _parse_variable_blob(cls, value: Any) -> Any:
        return _json_object(value) or {}

    @model_validator(mode="after")
    def _check_api_source(self) -> "ApiEndpointConfig":
        if self.api_source_type == "secondary" and not self.secondary_api_id:
            raise ValueError("secondaryApiId is required when apiSourceType is 'secondary'")
        return self


class Condition(ConfigModel):
    json_path: str = ""
    operator: str = "equals"
    expected_value: Any = None

    @field_validator("operator")
    @classmethod
    def _known_operator(cls, value: str) -> str:
        return canonical_operator(value)


class ConditionalCheckConfig(ConfigModel):
    json_path: str = ""
    operator: str = "exists"
    expected_value: Any = None
    additional_conditions: List[Condition] = Field(default_factory=list)
    logical_operator: Literal["AND", "OR"] = "AND"
    store_result_as: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _normalize_legacy(cls, raw: Any) -> Any:
        if not isinstance(raw, dict):
            return raw
        raw = dict(raw)
        # fieldPath wins over jsonPath, which wins over checkField
        field_path = raw.pop("fieldPath", None)
        check_field = raw.pop("checkField", None)
        raw["jsonPath"] = field_path or raw.get("jsonPath") or raw.get("json_path") or check_field or ""
        raw.pop("json_path", None)
        _rename(raw, "conditionType", "operator")
        if isinstance(raw.get("logicalOperator"), str):
            raw["logicalOperator"] = raw["logicalOperator"].upper()
        return raw

    @field_validator("operator")
    @classmethod
    def _known_operator(cls, value: str) -> str:
        return canonical_operator(value or "exists")


class UserConfirmationConfig(ConfigModel):
    prompt_message: str = "Do you want to continue?"
    yes_button_label: str = "Yes"
    no_button_label: str = "No"
    show_location_map: bool = False
    latitude_variable: Optional[str] = None
    longitude_variable: Optional[str] = None

    @model_validator(mode="after")
    def _check_map_variables(self) -> "UserConfirmationConfig":
        if self.show_location_map and not (self.latitude_variable and self.longitude_variable):
            raise ValueError("latitudeVariable and longitudeVariable are required when showLocationMap is set")
        return self


class ExitConfig(ConfigModel):
    exit_message: str = "Flow completed."
    show_restart_button: bool = False


def _check_unique_field_names(mappings: List[Any]) -> List[Any]:
    seen = set()
    for mapping in mappings:
        name = mapping.field_name.strip()
        if not name:
            raise ValueError("response mapping fieldName must not be empty")
        if name in seen:
            raise ValueError(f"duplicate response mapping fieldName: {name}")
        seen.add(name)
    return mappings


class AiResponseMapping(ConfigModel):
    field_name: str = ""
    source_instruction: str = ""

    @model_validator(mode="before")
    @classmethod
    def _normalize_legacy(cls, raw: Any) -> Any:
        if isinstance(raw, dict):
            raw = dict(raw)
            _rename(raw, "aiInstruction", "sourceInstruction")
        return raw


class AiLookupConfig(ConfigModel):
    instruction: str = ""
    response_mappings: List[AiResponseMapping] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _normalize_legacy(cls, raw: Any) -> Any:
        if isinstance(raw, dict):
            raw = dict(raw)
            _rename(raw, "aiPrompt", "instruction")
            _rename(raw, "aiResponseMappings", "responseMappings")
        return raw

    @field_validator("response_mappings")
    @classmethod
    def _unique_names(cls, value: List[AiResponseMapping]) -> List[AiResponseMapping]:
        return _check_unique_field_names(value)


class PlacesResponseMapping(ConfigModel):
    field_name: str = ""
    places_field: str = ""


class GooglePlacesLookupConfig(ConfigModel):
    query: str = ""
    fields_to_return: Dict[str, bool] = Field(default_factory=lambda: {"name": True, "address": True})
    response_mappings: List[PlacesResponseMapping] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _normalize_legacy(cls, raw: Any) -> Any:
        if isinstance(raw, dict):
            raw = dict(raw)
            _rename(raw, "placesSearchQuery", "query")
            _rename(raw, "placesFieldsToReturn", "fieldsToReturn")
            _rename(raw, "placesResponseMappings", "responseMappings")
        return raw

    @field_validator("response_mappings")
    @classmethod
    def _unique_names(cls, value: List[PlacesResponseMapping]) -> List[PlacesResponseMapping]:
        return _check_unique_field_names(value)


class FormPart(ConfigModel):
    name: str
    type: Literal["text", "file"] = "text"
    value: str = ""
    content_type: Optional[str] = None

    @property
    def is_json(self) -> bool:
        if self.type != "text":
            return False
        if self.content_type and "json" in self.content_type.lower():
            return True
        return self.value.strip().startswith(("{", "["))


class MultipartFormUploadConfig(ConfigModel):
    url: str = ""
    method: str = "POST"
    headers: Dict[str, str] = Field(default_factory=dict)
    form_parts: List[FormPart] = Field(default_factory=list)
    response_data_mappings: List[ResponseDataMapping] = Field(default_factory=list)

    @field_validator("headers", mode="before")
    @classmethod
    def _parse_headers(cls, value: Any) -> Any:
        return _header_map(value)

    def json_templates(self) -> Iterable[Tuple[str, str]]:
        for index, part in enumerate(self.form_parts):
            if part.is_json:
                yield f"formParts[{index}].value", part.value

    def part_field_mappings(self) -> Dict[str, List[BodyFieldMapping]]:
        """Field mappings for each JSON text part, keyed by part name."""
        return {part.name: decompose_json_part(part.value) for part in self.form_parts if part.is_json}


class Transformation(ConfigModel):
    json_path: str
    operation: Literal["set_value", "copy_from", "append", "remove", "format_phone_us"] = "set_value"
    value: Any = None
    source_json_path: Optional[str] = None

    @model_validator(mode="after")
    def _copy_needs_source(self) -> "Transformation":
        if self.operation == "copy_from" and not self.source_json_path:
            raise ValueError("copy_from requires sourceJsonPath")
        return self


class DataTransformConfig(ConfigModel):
    transformations: List[Transformation] = Field(default_factory=list)


class SftpUploadConfig(ConfigModel):
    upload_type: Literal["pdf", "json"] = "json"
    remote_path: str = "/"
    use_api_response_for_filename: bool = False
    filename_source_path: str = ""
    fallback_filename: str = "document"


class RenameFileConfig(ConfigModel):
    filename_template: str = "Remit_{{pdfFilename}}"
    append_timestamp: bool = False
    timestamp_format: Literal["YYYYMMDD", "YYYY-MM-DD", "YYYYMMDD_HHMMSS", "YYYY-MM-DD_HH-MM-SS"] = "YYYYMMDD"
    file_extension: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _normalize_legacy(cls, raw: Any) -> Any:
        if isinstance(raw, dict):
            raw = dict(raw)
            _rename(raw, "template", "filenameTemplate")
        return raw


class EmailActionConfig(ConfigModel):
    to: str = ""
    cc: Optional[str] = None
    subject: str = ""
    body: str = ""
    from_address: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _normalize_legacy(cls, raw: Any) -> Any:
        if isinstance(raw, dict):
            raw = dict(raw)
            _rename(raw, "from", "fromAddress")
        return raw


CONFIG_MODELS: Dict[StepType, Type[ConfigModel]] = {
    StepType.API_CALL: ApiCallConfig,
    StepType.API_ENDPOINT: ApiEndpointConfig,
    StepType.CONDITIONAL_CHECK: ConditionalCheckConfig,
    StepType.DATA_TRANSFORM: DataTransformConfig,
    StepType.SFTP_UPLOAD: SftpUploadConfig,
    StepType.RENAME_FILE: RenameFileConfig,
    StepType.EMAIL_ACTION: EmailActionConfig,
    StepType.USER_CONFIRMATION: UserConfirmationConfig,
    StepType.EXIT: ExitConfig,
    StepType.AI_LOOKUP: AiLookupConfig,
    StepType.GOOGLE_PLACES_LOOKUP: GooglePlacesLookupConfig,
    StepType.MULTIPART_FORM_UPLOAD: MultipartFormUploadConfig,
}

_missing = set(StepType) - set(CONFIG_MODELS)
if _missing:
    raise RuntimeError(f"No config model for step types: {sorted(t.value for t in _missing)}")


def offset_to_line_column(text: str, offset: int) -> Tuple[int, int]:
    """1-based (line, column) of a character offset."""
    before = text[:offset]
    line = before.count("\n") + 1
    column = offset - (before.rfind("\n") + 1) + 1
    return line, column


def _blank_tokens(text: str) -> str:
    # same length, so parse offsets still point into the original text
    def _blank(match: "re.Match[str]") -> str:
        return "0" + re.sub(r"[^\n]", " ", match.group(0)[1:])
    return TOKEN_PATTERN.sub(_blank, text)


def check_json_template(text: str, field: str) -> None:
    """Raise WorkflowValidationError if a JSON-looking template is malformed."""
    if not text or not text.strip().startswith(("{", "[")):
        return
    try:
        json.loads(_blank_tokens(text))
    except json.JSONDecodeError as e:
        line, column = offset_to_line_column(text, e.pos)
        raise WorkflowValidationError(f"Invalid JSON: {e.msg}", field=field, line=line, column=column) from e


def _step_type(step_type: Any) -> StepType:
    try:
        return StepType(step_type)
    except ValueError:
        raise WorkflowValidationError(f"Unsupported step type: {step_type}", field="type") from None


def validate_step_config(step_type: Any, raw: Any) -> ConfigModel:
    """
    Normalize ``raw`` into the config model for ``step_type``. A JSON string
    is accepted in place of a mapping.
    """
    kind = _step_type(step_type)
    model = CONFIG_MODELS[kind]
    if isinstance(raw, str):
        try:
            raw = _json_object(raw)
        except ValueError as e:
            raise WorkflowValidationError(str(e), field="config") from e
    try:
        config = model.model_validate(raw or {})
    except ValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(part) for part in first["loc"]) or None
        raise WorkflowValidationError(f"{kind.value} config invalid: {first['msg']}", field=location) from e

    for field, text in config.json_templates():
        check_json_template(text, field)
    return config


def normalize_config(step_type: Any, raw: Any) -> Dict[str, Any]:
    """Validated config as a wire-format dict."""
    return validate_step_config(step_type, raw).to_wire()


def decompose_json_part(text: str) -> List[BodyFieldMapping]:
    """
    Turn a JSON multipart text part into body field mappings. Nested keys
    are joined with dots; arrays contribute their first element as ``key[0]``.
    A leaf that is exactly one ``{{token}}`` becomes a variable mapping.
    Editors call this (through ``MultipartFormUploadConfig.part_field_mappings``)
    to seed a field mapping table from an existing part.
    """
    check_json_template(text, "value")
    document = json.loads(_quote_bare_tokens(text))

    mappings: List[BodyFieldMapping] = []

    def _walk(value: Any, prefix: str) -> None:
        if isinstance(value, dict):
            for key, child in value.items():
                _walk(child, f"{prefix}.{key}" if prefix else key)
        elif isinstance(value, list):
            if value:
                _walk(value[0], f"{prefix}[0]")
        else:
            mappings.append(_leaf_mapping(prefix, value))

    _walk(document, "")
    return mappings


def _quote_bare_tokens(text: str) -> str:
    """Wrap ``{{token}}`` occurrences that sit outside JSON strings in quotes."""
    out: List[str] = []
    in_string = False
    escaped = False
    i = 0
    while i < len(text):
        char = text[i]
        if in_string:
            out.append(char)
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            i += 1
            continue
        if char == '"':
            in_string = True
        elif text.startswith("{{", i):
            end = text.find("}}", i)
            if end != -1:
                out.append(json.dumps(text[i:end + 2]))
                i = end + 2
                continue
        out.append(char)
        i += 1
    return "".join(out)


def _leaf_mapping(field_name: str, value: Any) -> BodyFieldMapping:
    if isinstance(value, str):
        match = TOKEN_PATTERN.fullmatch(value.strip())
        if match:
            return BodyFieldMapping(field_name=field_name, type="variable", value=match.group(1).strip())
        return BodyFieldMapping(field_name=field_name, value=value)
    if isinstance(value, bool):
        return BodyFieldMapping(field_name=field_name, value=str(value).lower(), data_type="boolean")
    if isinstance(value, int):
        return BodyFieldMapping(field_name=field_name, value=str(value), data_type="integer")
    if isinstance(value, float):
        return BodyFieldMapping(field_name=field_name, value=str(value), data_type="number")
    return BodyFieldMapping(field_name=field_name, value="" if value is None else str(value))
