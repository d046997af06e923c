"""Tests for the individual step handlers."""

import base64
import json
from datetime import datetime

import pytest

from stepgraph.errors import StepExecutionError, WorkflowValidationError
from stepgraph.services.registry import register_service
from stepgraph.steps.api import ApiCallStep, ApiEndpointStep, MultipartFormUploadStep
from stepgraph.steps.base import StepEnvironment
from stepgraph.steps.conditional import ConditionalCheckStep
from stepgraph.steps.files import RenameFileStep, SftpUploadStep
from stepgraph.steps.interaction import ExitStep, UserConfirmationStep
from stepgraph.steps.lookup import AiLookupStep, GooglePlacesLookupStep, parse_ai_response
from stepgraph.steps.notification import EmailActionStep
from stepgraph.steps.transform import DataTransformStep, format_phone_us
from stepgraph.workflow.context import ExecutionContext
from stepgraph.workflow.factory import make_step_handler
from stepgraph.workflow.models import Group, Node, NodeKind, StepType
from stepgraph.workflow.schema import validate_step_config


def _step(cls, step_type, config, settings=None, **env):
    if settings is not None:
        env["settings"] = settings
    return cls("n1", "Step", validate_step_config(step_type, config), StepEnvironment(**env))


def _ctx(**execute):
    return ExecutionContext({"execute": execute})


# --- api_call -----------------------------------------------------------------

def test_api_call_renders_request_and_maps_response(fake_http, settings):
    fake_http.reply({"data": {"id": "X1"}})
    step = _step(ApiCallStep, "api_call", {
        "method": "post",
        "url": "https://api.test/orders/{{orderId}}",
        "requestBody": '{"sku": "{{sku}}"}',
        "responseDataMappings": [{"responsePath": "data.id", "updatePath": "newId"}],
    }, settings)

    outcome = step.execute(_ctx(orderId="9", sku="A"))

    request = fake_http.requests[0]
    assert (request["method"], request["url"]) == ("POST", "https://api.test/orders/9")
    assert fake_http.bodies == [{"sku": "A"}]
    assert outcome.output == {"data": {"id": "X1"}}
    assert outcome.context.get("response.newId") == "X1"


def test_api_call_get_sends_no_body_and_parses_odd_responses(fake_http, settings):
    fake_http.reply(text="")
    fake_http.reply(text="plain words")
    step = _step(ApiCallStep, "api_call", {"method": "GET", "url": "https://api.test/x",
                                           "requestBody": '{"a": 1}'}, settings)

    assert step.execute(_ctx()).output == {"success": True}
    assert step.execute(_ctx()).output == {"rawResponse": "plain words"}
    assert fake_http.requests[0]["body"] is None


def test_api_call_failure_carries_request(fake_http, settings):
    fake_http.reply(status_code=500, text="boom")
    step = _step(ApiCallStep, "api_call", {"url": "https://api.test/x", "requestBody": '{"a": 1}'}, settings)

    with pytest.raises(StepExecutionError) as exc:
        step.execute(_ctx())

    assert str(exc.value) == "API call failed with status 500: boom"
    assert exc.value.request_url == "https://api.test/x"
    assert exc.value.http_method == "POST"
    assert exc.value.request_body == '{"a": 1}'


def _loop_step(settings, stop_on_error):
    groups = {"g-items": Group(id="g-items", name="items", is_array_group=True)}
    return _step(ApiCallStep, "api_call", {
        "url": "https://api.test/lines",
        "requestBody": '{"sku": "{{sku}}"}',
        "arrayProcessingMode": "loop",
        "arraySourceGroupId": "g-items",
        "stopOnError": stop_on_error,
        "responseDataMappings": [{"responsePath": "id", "updatePath": "firstLine"}],
    }, settings, groups=groups)


def test_api_call_loop_stops_on_error(fake_http, settings):
    fake_http.reply({"id": 1})
    fake_http.reply(status_code=400, text="bad")

    with pytest.raises(StepExecutionError) as exc:
        _loop_step(settings, True).execute(_ctx(items=[{"sku": "A"}, {"sku": "B"}, {"sku": "C"}]))

    assert str(exc.value) == "Array loop failed at row 2: API call failed with status 400: bad"
    assert len(fake_http.requests) == 2


def test_api_call_loop_collects_errors(fake_http, settings):
    fake_http.reply({"id": 1})
    fake_http.reply(status_code=400, text="bad")
    fake_http.reply({"id": 3})

    outcome = _loop_step(settings, False).execute(_ctx(items=[{"sku": "A"}, {"sku": "B"}, {"sku": "C"}]))

    assert outcome.output["successCount"] == 2
    assert outcome.output["errorCount"] == 1
    assert outcome.output["errors"][0]["index"] == 1
    assert outcome.output["totalRows"] == 3
    assert outcome.context.get("response.firstLine") == 1
    assert fake_http.bodies == [{"sku": "A"}, {"sku": "B"}, {"sku": "C"}]


def test_api_call_conditional_hardcode_without_match_is_skipped(fake_http, settings):
    step = _step(ApiCallStep, "api_call", {
        "url": "https://api.test/contacts",
        "arrayProcessingMode": "conditional_hardcode",
        "conditionalArrayMappings": [{"variable": "kind", "expectedValue": "EMAIL"}],
    }, settings)

    outcome = step.execute(_ctx(kind="PHONE"))
    assert outcome.output["skipped"] is True
    assert outcome.output["matchedConditions"] == 0
    assert fake_http.requests == []


def test_api_call_dry_run_sends_nothing(fake_http, settings):
    step = _step(ApiCallStep, "api_call", {"url": "https://api.test/x"}, settings)

    assert step.dry_run(_ctx()).output == {"dryRun": True, "node": "Step"}
    assert fake_http.requests == []


# --- api_endpoint -------------------------------------------------------------

def test_api_endpoint_builds_url_and_auth(fake_http, settings):
    step = _step(ApiEndpointStep, "api_endpoint", {
        "apiPath": "/customers/{customerId}",
        "pathVariableConfig": {"customerId": "{{custId}}"},
        "queryParameterConfig": {
            "$filter": "name eq '{{name}}'",
            "page size": {"value": "1 0"},
            "skip": {"value": "5", "enabled": False},
        },
    }, settings)

    step.execute(_ctx(custId="42", name="A B"))

    request = fake_http.requests[0]
    assert request["url"] == "https://api.example.test/customers/42?$filter=name%20eq%20'A%20B'&page%20size=1%200"
    assert request["method"] == "GET"
    assert request["headers"]["Authorization"] == "Bearer tok-123"
    assert request["body"] is None


def test_api_endpoint_secondary_target(fake_http, settings):
    step = _step(ApiEndpointStep, "api_endpoint", {
        "apiPath": "/leads", "apiSourceType": "secondary", "secondaryApiId": "crm",
    }, settings)

    step.execute(_ctx())
    assert fake_http.requests[0]["url"] == "https://crm.example.test/leads"
    assert fake_http.requests[0]["headers"]["Authorization"] == "Bearer crm-tok"


def test_api_endpoint_unknown_secondary_fails(fake_http, settings):
    step = _step(ApiEndpointStep, "api_endpoint", {
        "apiPath": "/leads", "apiSourceType": "secondary", "secondaryApiId": "nope",
    }, settings)

    with pytest.raises(StepExecutionError, match="API base URL not configured"):
        step.execute(_ctx())


# --- multipart_form_upload ----------------------------------------------------

def _upload_step(settings):
    return _step(MultipartFormUploadStep, "multipart_form_upload", {
        "url": "https://files.test/upload",
        "formParts": [
            {"name": "meta", "value": '{"id": "{{id}}"}'},
            {"name": "note", "value": "hi {{id}}"},
            {"name": "doc", "type": "file", "value": "{{pdf}}", "contentType": "application/pdf"},
        ],
        "responseDataMappings": [{"responsePath": "fileId", "updatePath": "uploadedId"}],
    }, settings)


def test_multipart_upload_sends_ordered_parts(fake_http, settings):
    fake_http.reply({"fileId": "F9"})
    outcome = _upload_step(settings).execute(_ctx(id="5", pdf=base64.b64encode(b"%PDF").decode()))

    request = fake_http.requests[0]
    assert request["data"] == {"note": "hi 5"}
    assert request["files"]["meta"] == (None, '{"id": "5"}', "application/json")
    assert request["files"]["doc"] == ("doc", b"%PDF", "application/pdf")
    assert outcome.context.get("response.uploadedId") == "F9"


def test_multipart_upload_rejects_bad_file_content(fake_http, settings):
    with pytest.raises(StepExecutionError, match="File part 'doc' is not valid base64 content"):
        _upload_step(settings).execute(_ctx(id="5", pdf="not*base64"))
    assert fake_http.requests == []


# --- conditional_check / confirmation / exit ----------------------------------

def test_conditional_check_picks_handle_and_stores_result(settings):
    step = _step(ConditionalCheckStep, "conditional_check",
                 {"jsonPath": "status", "operator": "equals", "expectedValue": "OPEN"}, settings, position=3)

    met = step.execute(_ctx(status="open"))
    assert met.handle == "success"
    assert met.context.get("condition_3_result") is True
    assert met.output["actualValue"] == "open"

    missed = step.execute(_ctx(status="closed"))
    assert missed.handle == "failure"
    assert missed.context.get("condition_3_result") is False


def test_conditional_check_named_result(settings):
    step = _step(ConditionalCheckStep, "conditional_check",
                 {"jsonPath": "n", "operator": "greater_than", "expectedValue": 2, "storeResultAs": "big"}, settings)

    assert step.execute(_ctx(n="3")).context.get("big") is True


def test_user_confirmation_builds_prompt(settings):
    step = _step(UserConfirmationStep, "user_confirmation", {
        "promptMessage": "Ship to {{execute.city}}?",
        "showLocationMap": True,
        "latitudeVariable": "execute.lat",
        "longitudeVariable": "execute.lng",
    }, settings)

    outcome = step.execute(_ctx(city="Oslo", lat=59.9, lng=10.7))
    assert outcome.confirmation["promptMessage"] == "Ship to Oslo?"
    assert (outcome.confirmation["latitude"], outcome.confirmation["longitude"]) == (59.9, 10.7)
    assert outcome.confirmation["nodeId"] == "n1"
    assert outcome.confirmation["yesButtonLabel"] == "Yes"


def test_exit_step(settings):
    step = _step(ExitStep, "exit", {"exitMessage": "Bye {{execute.name}}", "showRestartButton": True}, settings)

    outcome = step.execute(_ctx(name="Ada"))
    assert outcome.exit == {"exitMessage": "Bye Ada", "showRestartButton": True}


# --- lookups ------------------------------------------------------------------

def test_ai_lookup_writes_fields_under_execute_ai(settings):
    prompts = []

    @register_service("ai.lookup")
    def _ai(prompt):
        prompts.append(prompt)
        return '```json\n{"city": "Oslo"}\n```'

    step = _step(AiLookupStep, "ai_lookup", {
        "instruction": "Where is {{execute.company}}?",
        "responseMappings": [{"fieldName": "city", "sourceInstruction": "the head office city"}],
    }, settings)

    outcome = step.execute(_ctx(company="Acme"))
    assert outcome.context.get("execute.ai.city") == "Oslo"
    assert prompts[0].startswith("Where is Acme?")
    assert '- "city": the head office city' in prompts[0]


def test_parse_ai_response_falls_back_to_patterns():
    config = validate_step_config("ai_lookup", {"responseMappings": [{"fieldName": "city"}]})

    assert parse_ai_response('Sure! "city": "Oslo" is my answer', config) == {"city": "Oslo"}


def test_lookup_without_service_fails(settings):
    step = _step(AiLookupStep, "ai_lookup", {"instruction": "x"}, settings)

    with pytest.raises(StepExecutionError, match="Service not found: ai.lookup"):
        step.execute(_ctx())


def test_places_lookup_maps_extracted_fields(settings):
    @register_service("places.lookup")
    def _places(query, fields):
        return {
            "displayName": {"text": "Acme HQ"},
            "formattedAddress": "1 Main St, Oslo",
            "addressComponents": [{"types": ["locality"], "longText": "Oslo"}],
        }

    step = _step(GooglePlacesLookupStep, "google_places_lookup", {
        "query": "{{execute.company}} Oslo",
        "responseMappings": [
            {"fieldName": "addr", "placesField": "formattedAddress"},
            {"fieldName": "town", "placesField": "city"},
        ],
    }, settings)

    outcome = step.execute(_ctx(company="Acme"))
    assert outcome.context.get("execute.places.addr") == "1 Main St, Oslo"
    assert outcome.context.get("execute.places.town") == "Oslo"
    assert outcome.output["query"] == "Acme Oslo"


def test_places_lookup_no_result_and_empty_query(settings):
    register_service("places.lookup")(lambda query, fields: None)

    outcome = _step(GooglePlacesLookupStep, "google_places_lookup", {"query": "nowhere"}, settings).execute(_ctx())
    assert outcome.output["success"] is False

    with pytest.raises(StepExecutionError, match="Search query is empty"):
        _step(GooglePlacesLookupStep, "google_places_lookup", {"query": ""}, settings).execute(_ctx())


# --- files and email ----------------------------------------------------------

def test_rename_file_with_timestamp(settings):
    config = validate_step_config("rename_file", {
        "filenameTemplate": "Remit_{{execute.invoice}}.pdf",
        "appendTimestamp": True,
        "timestampFormat": "YYYYMMDD_HHMMSS",
        "fileExtension": "pdf",
    })
    step = RenameFileStep("n1", "Rename", config, StepEnvironment(settings=settings),
                          clock=lambda: datetime(2024, 3, 5, 14, 7, 9))

    outcome = step.execute(_ctx(invoice="INV1"))
    assert outcome.output == {"filename": "Remit_INV1_20240305_140709.pdf"}
    assert outcome.context.get("renamedFilename") == "Remit_INV1_20240305_140709.pdf"


def _record_uploads():
    uploads = []

    @register_service("sftp.upload")
    def _upload(**kwargs):
        uploads.append(kwargs)
        return {"remoteId": "r1"}

    return uploads


def test_sftp_json_upload_uses_renamed_filename(settings):
    uploads = _record_uploads()
    step = _step(SftpUploadStep, "sftp_upload", {"uploadType": "json", "remotePath": "/in"}, settings)
    context = ExecutionContext({"execute": {"a": 1}, "renamedFilename": "Remit_1.pdf"})

    outcome = step.execute(context)
    assert uploads[0]["filename"] == "Remit_1.json"
    assert json.loads(base64.b64decode(uploads[0]["content"])) == {"a": 1}
    assert uploads[0]["remote_path"] == "/in"
    assert outcome.output == {"uploaded": True, "filename": "Remit_1.json", "remotePath": "/in", "remoteId": "r1"}


def test_sftp_pdf_upload(settings):
    uploads = _record_uploads()
    step = _step(SftpUploadStep, "sftp_upload", {
        "uploadType": "pdf", "useApiResponseForFilename": True, "filenameSourcePath": "file.name",
    }, settings)

    with pytest.raises(StepExecutionError, match="PDF base64 data not available"):
        step.execute(ExecutionContext({"execute": {}}))

    step.execute(ExecutionContext({"pdfBase64": "JVBERg==", "response": {"file": {"name": "inv-9"}}}))
    assert uploads[0]["filename"] == "inv-9.pdf"
    assert uploads[0]["content"] == "JVBERg=="


def test_email_action(settings):
    sent = []
    register_service("email.send")(lambda **kwargs: sent.append(kwargs))
    step = _step(EmailActionStep, "email_action", {
        "to": "{{execute.email}}", "subject": "Order {{execute.id}}", "body": "Thanks {{execute.name}}",
    }, settings)

    outcome = step.execute(_ctx(email="a@b.test", id="7", name="Ada"))
    assert sent == [{"to": "a@b.test", "subject": "Order 7", "body": "Thanks Ada", "cc": None, "from_address": None}]
    assert outcome.output == {"success": True, "to": "a@b.test", "subject": "Order 7"}


def test_email_action_requires_recipient(settings):
    step = _step(EmailActionStep, "email_action", {"to": "  "}, settings)

    with pytest.raises(StepExecutionError, match="Email recipient is empty"):
        step.execute(_ctx())


# --- data_transform -----------------------------------------------------------

def test_data_transform_operations(settings):
    step = _step(DataTransformStep, "data_transform", {"transformations": [
        {"jsonPath": "execute.greeting", "operation": "set_value", "value": "Hi {{execute.name}}"},
        {"jsonPath": "execute.copy", "operation": "copy_from", "sourceJsonPath": "execute.name"},
        {"jsonPath": "execute.tags", "operation": "append", "value": "new"},
        {"jsonPath": "execute.name", "operation": "append", "value": "!"},
        {"jsonPath": "execute.tmp", "operation": "remove"},
        {"jsonPath": "execute.phone", "operation": "format_phone_us"},
    ]}, settings)

    outcome = step.execute(_ctx(name="Ada", tags=["old"], tmp="x", phone="1-555-123-4567"))
    execute = outcome.context.get("execute")
    assert execute["greeting"] == "Hi Ada"
    assert execute["copy"] == "Ada"
    assert execute["tags"] == ["old", "new"]
    assert execute["name"] == "Ada!"
    assert "tmp" not in execute
    assert execute["phone"] == "(555) 123-4567"
    assert outcome.output == {"transformed": True, "operations": 6}


def test_format_phone_us_leaves_other_values():
    assert format_phone_us("5551234567") == "(555) 123-4567"
    assert format_phone_us("12345") == "12345"


# --- factory ------------------------------------------------------------------

def test_make_step_handler():
    node = Node(id="a", kind=NodeKind.WORKFLOW, label="Call", step_type=StepType.API_CALL,
                config={"url": "https://x.test"})
    handler = make_step_handler(node)
    assert isinstance(handler, ApiCallStep)
    assert handler.config.url == "https://x.test"

    with pytest.raises(ValueError):
        make_step_handler(Node(id="g", kind=NodeKind.GROUP, group_id="g1"))

    bad = Node(id="b", kind=NodeKind.WORKFLOW, step_type=StepType.API_CALL, config={"requestBody": "{oops"})
    with pytest.raises(WorkflowValidationError):
        make_step_handler(bad)


@pytest.mark.parametrize("namespace", ["form", "execute", "response"])
def test_data_transform_never_drops_or_flattens_a_namespace(settings, namespace):
    step = _step(DataTransformStep, "data_transform", {"transformations": [
        {"jsonPath": namespace, "operation": "remove"},
        {"jsonPath": namespace, "operation": "set_value", "value": "flat"},
        {"jsonPath": f"{namespace}.gone", "operation": "remove"},
    ]}, settings)
    context = ExecutionContext({"form": {"f": 1}, "response": {"id": 1}, "execute": {"a": 1},
                                namespace: {"kept": True, "gone": 1}})

    data = step.execute(context).context.data

    assert data[namespace] == {"kept": True}
    assert {"form", "execute", "response"} <= set(data)


def test_response_mapping_updates_an_existing_list_item(fake_http, settings):
    fake_http.reply({"qty": 3})
    step = _step(ApiCallStep, "api_call", {
        "method": "GET",
        "url": "https://api.test/stock",
        "responseDataMappings": [{"responsePath": "qty", "updatePath": "items.1.qty"}],
    }, settings)
    context = ExecutionContext({"execute": {}, "response": {"items": [{"sku": "A"}, {"sku": "B"}]}})

    outcome = step.execute(context)

    assert outcome.context.get("response.items") == [{"sku": "A"}, {"sku": "B", "qty": 3}]
