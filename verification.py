"""
Vision model adapter: asks the model about waste photos and turns its
free-text answer into structured results.

Key points:
    - One call per verification attempt. No retries; the user re-triggers.
    - Prompts ask for a bare JSON object, but models like to wrap it in
      markdown fences, so we dig the object out before parsing.
    - Transport/model failures raise VerificationError, unusable answers
      raise ParseError. Callers treat both the same way.
"""

import base64
import json
import logging
import re

import openai
from openai import OpenAI
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as SchemaError

import config
from errors import ParseError, VerificationError

logger = logging.getLogger(__name__)

REPORT_PROMPT = """You are an expert in waste management and recycling. Analyze this image and provide:
1. The type of waste (e.g., plastic, paper, glass, metal, organic)
2. An estimate of the quantity or amount in kg
3. Your confidence level in this assessment as a number between 0 and 1

Respond with a single JSON object and nothing else, like this:
{
  "wasteType": "type of waste",
  "quantity": "estimated quantity with unit",
  "confidence": 0.85
}"""

COLLECTION_PROMPT = """You are an expert in waste management and recycling. Analyze this image and provide:
1. Confirm if the waste type matches: {waste_type}
2. Estimate if the quantity matches: {amount} kg
3. Your confidence level in this assessment as a number between 0 and 1

Respond with a single JSON object and nothing else, like this:
{{
  "wasteTypeMatch": true,
  "quantityMatch": true,
  "confidence": 0.85
}}"""

_FENCE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)


class _ModelAnswer(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    confidence: float = Field(..., ge=0, le=1)

    @field_validator("confidence", mode="before")
    @classmethod
    def percent_to_fraction(cls, v):
        # The model sometimes answers 85 instead of 0.85.
        if isinstance(v, bool):
            raise ValueError("confidence must be a number, not a boolean")
        if isinstance(v, str):
            v = v.strip().rstrip("%")
        elif not isinstance(v, (int, float)):
            return v
        v = float(v)
        if 1 < v <= 100:
            v = v / 100
        return v


class ReportAnalysis(_ModelAnswer):
    """What the model sees in a freshly reported photo."""
    waste_type: str = Field(..., alias="wasteType", min_length=1)
    quantity: str = Field(..., min_length=1)

    @field_validator("quantity", mode="before")
    @classmethod
    def quantity_as_text(cls, v):
        return str(v) if isinstance(v, (int, float)) else v


class CollectionCheck(_ModelAnswer):
    """Whether a collection photo matches what was reported."""
    waste_type_match: bool = Field(..., alias="wasteTypeMatch")
    quantity_match: bool = Field(..., alias="quantityMatch")

    @property
    def accepted(self) -> bool:
        return (self.waste_type_match and self.quantity_match
                and self.confidence > config.CONFIDENCE_THRESHOLD)


def get_client() -> OpenAI:
    """Create an OpenAI client pointed at the configured vision endpoint."""
    if not config.AI_API_KEY:
        raise VerificationError("AI verification is not configured")
    return OpenAI(api_key=config.AI_API_KEY, base_url=config.AI_BASE_URL)


def call_vision_model(prompt: str, image: bytes, mime_type: str, client: OpenAI = None) -> str:
    """Send one prompt plus one inline image and return the raw text answer."""
    if not image:
        raise VerificationError("No image supplied")
    client = client or get_client()
    data_url = f"data:{mime_type};base64,{base64.b64encode(image).decode('ascii')}"
    try:
        response = client.chat.completions.create(
            model=config.AI_MODEL,
            messages=[{
                "role": "user",
                "content": [
                    {"type": "text", "text": prompt},
                    {"type": "image_url", "image_url": {"url": data_url}},
                ],
            }],
            temperature=0.1,
        )
    except openai.OpenAIError as e:
        logger.error(f"Vision model call failed: {e}")
        raise VerificationError("Verification service unavailable") from e

    text = response.choices[0].message.content if response.choices else None
    if not text:
        raise ParseError("Empty response from verification service")
    return text


def extract_json(raw_text: str) -> dict:
    """Pull the single JSON object out of a model answer, fenced or not."""
    fenced = _FENCE.search(raw_text)
    candidate = fenced.group(1) if fenced else raw_text
    start, end = candidate.find("{"), candidate.rfind("}")
    if start == -1 or end < start:
        logger.error(f"No JSON object in model response: {raw_text[:500]}")
        raise ParseError("Verification response was not JSON")
    try:
        data = json.loads(candidate[start:end + 1])
    except json.JSONDecodeError as e:
        logger.error(f"Invalid JSON in model response: {raw_text[:500]}")
        raise ParseError("Verification response was not valid JSON") from e
    if not isinstance(data, dict):
        raise ParseError("Verification response was not a JSON object")
    return data


def _parse(raw_text: str, model):
    try:
        return model.model_validate(extract_json(raw_text))
    except SchemaError as e:
        logger.error(f"Model response missing expected fields: {e}")
        raise ParseError("Verification response did not have the expected fields") from e


def analyze_report_image(image: bytes, mime_type: str, client: OpenAI = None) -> ReportAnalysis:
    return _parse(call_vision_model(REPORT_PROMPT, image, mime_type, client), ReportAnalysis)


def verify_collection_image(image: bytes, mime_type: str, waste_type: str, amount: float,
                            client: OpenAI = None) -> CollectionCheck:
    prompt = COLLECTION_PROMPT.format(waste_type=waste_type, amount=amount)
    return _parse(call_vision_model(prompt, image, mime_type, client), CollectionCheck)
