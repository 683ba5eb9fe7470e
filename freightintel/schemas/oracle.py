"""
schemas/oracle.py — Pydantic models and JSON schemas for the LLM oracles

The JSON schemas are sent as tool input_schema; the pydantic models validate
what comes back before anything touches the database.

Business Rules:
- Confidence is 0-100 on every payload
- document_type is lower-cased and stripped; alias and unknown-type mapping
  happens in the classifier, not here
- Extracted values are free text; normalization happens per field downstream
- Unknown field names are dropped silently (the oracle may over-report)

Called by: services/classifier.py, services/extraction.py
Depends on: pydantic
"""

from __future__ import annotations

from pydantic import BaseModel, Field, field_validator

from ..utils.normalization import SHIPMENT_FIELDS


class ClassificationOutput(BaseModel):
    document_type: str
    confidence: float = Field(ge=0, le=100)
    reasoning: str = ""

    @field_validator("document_type")
    @classmethod
    def clean_type(cls, v: str) -> str:
        return v.strip().lower().replace(" ", "_").replace("-", "_")


class ExtractedValue(BaseModel):
    field_name: str
    value: str | list[str] | None = None
    confidence: float = Field(default=0, ge=0, le=100)

    @field_validator("field_name")
    @classmethod
    def clean_name(cls, v: str) -> str:
        return v.strip().lower()


class ExtractionOutput(BaseModel):
    fields: list[ExtractedValue] = Field(default_factory=list)
    overall_confidence: float = Field(default=0, ge=0, le=100)

    def known_fields(self) -> list[ExtractedValue]:
        """Fields the engine tracks, with a non-empty value."""
        return [
            f for f in self.fields
            if f.field_name in SHIPMENT_FIELDS and f.value not in (None, "", [])
        ]


CLASSIFICATION_SCHEMA = {
    "type": "object",
    "properties": {
        "document_type": {
            "type": "string",
            "description": "One of the known document types, snake_case",
        },
        "confidence": {"type": "number", "minimum": 0, "maximum": 100},
        "reasoning": {"type": "string"},
    },
    "required": ["document_type", "confidence"],
}

EXTRACTION_SCHEMA = {
    "type": "object",
    "properties": {
        "fields": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "field_name": {"type": "string", "enum": list(SHIPMENT_FIELDS)},
                    "value": {
                        "anyOf": [
                            {"type": "string"},
                            {"type": "array", "items": {"type": "string"}},
                        ]
                    },
                    "confidence": {"type": "number", "minimum": 0, "maximum": 100},
                },
                "required": ["field_name", "value", "confidence"],
            },
        },
        "overall_confidence": {"type": "number", "minimum": 0, "maximum": 100},
    },
    "required": ["fields", "overall_confidence"],
}
