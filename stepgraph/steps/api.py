"""HTTP steps: ``api_call``, ``api_endpoint`` and ``multipart_form_upload``."""

import base64
import binascii
import json
import logging
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote

from ..errors import StepExecutionError
from ..workflow.arrays import EXECUTOR_SCOPES, ArrayPlan, PlannedCall, build_request_body, plan_array_calls
from ..workflow.context import RESPONSE, ExecutionContext
from ..workflow.schema import ApiEndpointConfig, ApiStepConfig, MultipartFormUploadConfig
from ..workflow.templating import lookup_path, resolve, resolve_path_variables
from .base import BaseStep, StepOutcome

logger = logging.getLogger(__name__)

ODATA_PARAMS = {"$filter", "$select", "$orderby", "$expand", "$top", "$skip", "$count"}
_URI_SAFE = "-_.!~*'()"


def parse_response_body(text: str) -> Any:
    if not text or not text.strip():
        return {"success": True}
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return {"rawResponse": text}


def apply_response_mappings(mappings, response_data: Any, context: ExecutionContext) -> ExecutionContext:
    """Copy values out of a response into ``response.<updatePath>``."""
    updates = {}
    for mapping in mappings:
        found, value = lookup_path(response_data, mapping.response_path)
        if found:
            updates[f"{RESPONSE}.{mapping.update_path}"] = value
            logger.debug("Stored response.%s", mapping.update_path)
    return context.set_many(updates) if updates else context


class ApiCallStep(BaseStep):
    """ Send a templated HTTP request, once or once per planned array call. """

    config: ApiStepConfig

    def request_url(self, context: Dict[str, Any]) -> str:
        return resolve(self.config.url, context, scopes=EXECUTOR_SCOPES)

    def request_headers(self, context: Dict[str, Any]) -> Dict[str, str]:
        return {k: resolve(v, context, scopes=EXECUTOR_SCOPES) for k, v in self.config.headers.items()}

    def send(self, call: PlannedCall) -> Any:
        method = self.config.method
        url = self.request_url(call.context)
        body = build_request_body(call, self.config.request_body, self.config.escape_single_quotes_in_body)
        payload = body if method != "GET" and body.strip() else None

        response = self.service("http.request")(method, url, headers=self.request_headers(call.context), body=payload)
        if not response.ok:
            raise StepExecutionError(
                f"API call failed with status {response.status_code}: {response.text}",
                request_url=url, request_body=payload, http_method=method,
            )
        return parse_response_body(response.text)

    def execute(self, context: ExecutionContext) -> StepOutcome:
        plan = plan_array_calls(self.config, context.data, self.env.groups)
        if plan.skipped:
            return StepOutcome(output={
                "arrayProcessingMode": plan.mode,
                "totalConditions": plan.total_conditions,
                "matchedConditions": 0,
                "skipped": True,
                "message": plan.skipped_reason,
            }, context=context)

        if plan.mode in ("loop", "conditional_hardcode"):
            return self._run_many(plan, context)

        data = self.send(plan.calls[0])
        context = apply_response_mappings(self.config.response_data_mappings, data, context)
        if plan.mode == "batch":
            data = {"arrayProcessingMode": "batch", "totalRows": plan.total_rows, "response": data}
        return StepOutcome(output=data, context=context)

    def _run_many(self, plan: ArrayPlan, context: ExecutionContext) -> StepOutcome:
        results: List[Dict[str, Any]] = []
        errors: List[Dict[str, Any]] = []
        for call in plan.calls:
            try:
                data = self.send(call)
            except StepExecutionError as e:
                errors.append({"index": call.index, "error": str(e)})
                if plan.stop_on_error:
                    raise StepExecutionError(
                        f"Array loop failed at row {call.index + 1}: {e}",
                        request_url=e.request_url, request_body=e.request_body, http_method=e.http_method,
                    ) from e
                continue
            results.append({"index": call.index, "success": True, "data": data})
            # only the first call feeds response mappings
            if call.index == 0:
                context = apply_response_mappings(self.config.response_data_mappings, data, context)

        output: Dict[str, Any] = {
            "arrayProcessingMode": plan.mode,
            "successCount": len(results),
            "errorCount": len(errors),
            "results": results,
        }
        if plan.mode == "loop":
            output["totalRows"] = plan.total_rows
        else:
            output["totalConditions"] = plan.total_conditions
            output["matchedConditions"] = len(plan.calls)
        if errors:
            output["errors"] = errors
        return StepOutcome(output=output, context=context)


class ApiEndpointStep(ApiCallStep):
    """ Call a configured API by path, with path variables and query parameters. """

    config: ApiEndpointConfig

    def _target(self) -> Tuple[str, Optional[str]]:
        settings = self.env.settings
        if self.config.api_source_type == "secondary":
            target = settings.secondary_apis.get(self.config.secondary_api_id or "")
            base_url, token = (target.base_url, target.auth_token) if target else ("", None)
        else:
            base_url, token = settings.api_base_url, settings.api_auth_token
        if not base_url:
            raise StepExecutionError("API base URL not configured")
        return base_url, token

    def request_url(self, context: Dict[str, Any]) -> str:
        base_url, _ = self._target()
        scopes = EXECUTOR_SCOPES
        path = resolve(self.config.api_path, context, scopes=scopes)
        path = resolve_path_variables(path, [
            (name, resolve(variable.value, context, scopes=scopes))
            for name, variable in self.config.path_variable_config.items()
            if variable.enabled and variable.value
        ])

        query = []
        for name, param in self.config.query_parameter_config.items():
            if not (param.enabled and param.value):
                continue
            value = resolve(param.value, context, scopes=scopes)
            if name.lower() in ODATA_PARAMS:
                query.append(f"{name}={value.replace(' ', '%20')}")
            else:
                query.append(f"{quote(name, safe=_URI_SAFE)}={quote(value, safe=_URI_SAFE)}")
        return f"{base_url}{path}{'?' + '&'.join(query) if query else ''}"

    def request_headers(self, context: Dict[str, Any]) -> Dict[str, str]:
        headers = super().request_headers(context)
        _, token = self._target()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers


class MultipartFormUploadStep(BaseStep):
    """ Post ordered text and file parts as ``multipart/form-data``. """

    config: MultipartFormUploadConfig

    def execute(self, context: ExecutionContext) -> StepOutcome:
        url = self.render(self.config.url, context)
        headers = {k: self.render(v, context) for k, v in self.config.headers.items()}
        data: Dict[str, str] = {}
        files: Dict[str, Tuple[Optional[str], Any, str]] = {}

        for part in self.config.form_parts:
            value = self.render(part.value, context)
            if part.type == "file":
                files[part.name] = (part.name, self._decode_file(part.name, value),
                                    part.content_type or "application/octet-stream")
            elif part.is_json:
                files[part.name] = (None, value, part.content_type or "application/json")
            else:
                data[part.name] = value

        method = self.config.method.upper()
        response = self.service("http.request")(method, url, headers=headers, data=data, files=files)
        if not response.ok:
            raise StepExecutionError(
                f"Multipart upload failed with status {response.status_code}: {response.text}",
                request_url=url, request_body=json.dumps(data), http_method=method,
            )
        result = parse_response_body(response.text)
        context = apply_response_mappings(self.config.response_data_mappings, result, context)
        return StepOutcome(output=result, context=context)

    @staticmethod
    def _decode_file(name: str, value: str) -> bytes:
        try:
            return base64.b64decode(value, validate=True)
        except (binascii.Error, ValueError) as e:
            raise StepExecutionError(f"File part '{name}' is not valid base64 content") from e
