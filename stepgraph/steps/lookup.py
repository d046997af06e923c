"""Lookup steps that enrich the context through external services.

``ai_lookup`` writes ``execute.ai.<fieldName>``; ``google_places_lookup``
writes ``execute.places.<fieldName>``.
"""

import json
import logging
import re
from typing import Any, Dict, Mapping, Optional

from ..errors import StepExecutionError
from ..workflow.context import EXECUTE, ExecutionContext
from ..workflow.schema import AiLookupConfig, GooglePlacesLookupConfig
from .base import BaseStep, StepOutcome

logger = logging.getLogger(__name__)

AI_PROMPT_SUFFIX = """

You must respond with a valid JSON object containing the following fields:
{fields}

IMPORTANT:
- Return ONLY a valid JSON object, no markdown or other formatting
- If you cannot find information for a field, use null
- Keep values concise and accurate"""


def build_ai_prompt(base_prompt: str, config: AiLookupConfig) -> str:
    fields = "\n".join(f'- "{m.field_name}": {m.source_instruction}' for m in config.response_mappings)
    return base_prompt + AI_PROMPT_SUFFIX.format(fields=fields)


def parse_ai_response(text: str, config: AiLookupConfig) -> Dict[str, Any]:
    """
    Parse the model's reply as JSON, tolerating a markdown code fence. When
    it is not JSON, fall back to pulling ``"field": "value"`` pairs out of
    the text for each configured field.
    """
    body = text.strip()
    if body.startswith("```json"):
        body = body[7:]
    if body.startswith("```"):
        body = body[3:]
    if body.endswith("```"):
        body = body[:-3]
    try:
        parsed = json.loads(body.strip())
        if isinstance(parsed, dict):
            return parsed
    except json.JSONDecodeError:
        logger.warning("AI response was not valid JSON; extracting fields by pattern")

    results = {}
    for mapping in config.response_mappings:
        match = re.search(rf'"{re.escape(mapping.field_name)}"\s*:\s*"([^"]*)"', text, re.IGNORECASE)
        if match:
            results[mapping.field_name] = match.group(1)
    return results


class AiLookupStep(BaseStep):
    config: AiLookupConfig

    def execute(self, context: ExecutionContext) -> StepOutcome:
        prompt = build_ai_prompt(self.render(self.config.instruction, context), self.config)
        raw = self.service("ai.lookup")(prompt)
        results = parse_ai_response(raw or "", self.config)
        context = context.set_many({f"{EXECUTE}.ai.{key}": value for key, value in results.items()})
        return StepOutcome(output={"success": True, "results": results, "rawResponse": raw}, context=context)


def _component(place: Mapping[str, Any], kind: str, key: str = "longText") -> Optional[str]:
    for component in place.get("addressComponents") or []:
        if kind in (component.get("types") or []):
            return component.get(key)
    return None


def extract_place_fields(place: Mapping[str, Any]) -> Dict[str, Any]:
    """Flatten a Places API (v1) result into the names response mappings use."""
    display_name = place.get("displayName")
    if isinstance(display_name, Mapping):
        display_name = display_name.get("text")
    location = place.get("location") or {}
    hours = (place.get("currentOpeningHours") or {}).get("weekdayDescriptions")

    fields = {
        "name": display_name,
        "formattedAddress": place.get("formattedAddress"),
        "placeId": place.get("id"),
        "city": _component(place, "locality"),
        "state": _component(place, "administrative_area_level_1", "shortText"),
        "postalCode": _component(place, "postal_code"),
        "country": _component(place, "country"),
        "phone": place.get("nationalPhoneNumber") or place.get("internationalPhoneNumber"),
        "website": place.get("websiteUri"),
        "rating": place.get("rating"),
        "userRatingsTotal": place.get("userRatingCount"),
        "latitude": location.get("latitude"),
        "longitude": location.get("longitude"),
    }
    street = " ".join(p for p in (_component(place, "street_number"), _component(place, "route")) if p)
    if street:
        fields["streetAddress"] = street
    if hours:
        fields["hours"] = "; ".join(hours)
    return fields


class GooglePlacesLookupStep(BaseStep):
    config: GooglePlacesLookupConfig

    def execute(self, context: ExecutionContext) -> StepOutcome:
        query = self.render(self.config.query, context)
        if not query.strip():
            raise StepExecutionError("Search query is empty after variable substitution")

        place = self.service("places.lookup")(query, dict(self.config.fields_to_return))
        if not place:
            return StepOutcome(output={
                "success": False,
                "message": "No places found for the given query",
                "query": query,
            }, context=context)

        extracted = extract_place_fields(place)
        mapped = {m.field_name: extracted.get(m.places_field) for m in self.config.response_mappings}
        context = context.set_many({f"{EXECUTE}.places.{name}": value for name, value in mapped.items()})
        return StepOutcome(output={
            "success": True,
            "results": mapped,
            "rawData": extracted,
            "query": query,
        }, context=context)
