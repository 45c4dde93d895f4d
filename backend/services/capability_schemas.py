"""
Strict schemas for detector / analyzer payloads

Capabilities return loosely-typed JSON. Everything is parsed here into the
canonical dataclasses with explicit defaulting:
- an undecodable or non-object payload raises MalformedResponse
- a single malformed list item (component, connection, detection, threat)
  is dropped and logged, the rest of the payload survives
"""
import json
import logging
import re
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, AliasChoices, ValidationError, field_validator

from models.canonical import (
    DetectedComponent,
    DetectedConnection,
    PrimaryDetectionResult,
    SecondaryDetection,
    SecondaryDetectionResult,
    Severity,
    ThreatFinding,
    normalize_component_type,
    normalize_threat_category,
)
from services.errors import MalformedResponse

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```")


class _Lenient(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class ComponentPayload(_Lenient):
    id: str = Field(min_length=1)
    name: Optional[str] = None
    type: str = "external_service"
    description: str = ""
    provider: Optional[str] = None
    existing_security_controls: List[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("existingSecurityControls", "existing_security_controls"),
    )
    is_auto_scaling: bool = Field(
        default=False,
        validation_alias=AliasChoices("isAutoScaling", "autoScaling", "is_auto_scaling"),
    )
    availability_zone: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("availabilityZone", "availabilityZones", "availability_zone"),
    )
    replica_of: Optional[str] = Field(default=None, validation_alias=AliasChoices("replicaOf", "replica_of"))

    @field_validator("id", "name", "provider", mode="before")
    @classmethod
    def _scalar_to_str(cls, value):
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value

    @field_validator("description", mode="before")
    @classmethod
    def _none_to_empty(cls, value):
        return value or ""

    @field_validator("existing_security_controls", mode="before")
    @classmethod
    def _controls_list(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        return [str(v) for v in value if v]

    @field_validator("is_auto_scaling", mode="before")
    @classmethod
    def _none_to_false(cls, value):
        return False if value is None else value

    @field_validator("availability_zone", mode="before")
    @classmethod
    def _join_zones(cls, value):
        if isinstance(value, list):
            return ",".join(str(v) for v in value) or None
        return value

    @field_validator("replica_of", mode="before")
    @classmethod
    def _none_string(cls, value):
        if isinstance(value, str) and value.strip().lower() in ("", "none", "null"):
            return None
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value

    @field_validator("type", mode="before")
    @classmethod
    def _default_type(cls, value):
        return value or "external_service"

    def to_component(self) -> DetectedComponent:
        return DetectedComponent(
            id=self.id,
            name=self.name or self.id,
            type=normalize_component_type(self.type),
            description=self.description,
            provider=self.provider,
            existing_security_controls=self.existing_security_controls,
            is_auto_scaling=self.is_auto_scaling,
            availability_zone=self.availability_zone,
            replica_of=self.replica_of,
        )


class ConnectionPayload(_Lenient):
    source: str = Field(validation_alias=AliasChoices("from", "source"), min_length=1)
    target: str = Field(validation_alias=AliasChoices("to", "target"), min_length=1)
    protocol: str = ""
    port: Optional[str] = None
    encrypted: Optional[bool] = None
    description: str = ""

    @field_validator("source", "target", mode="before")
    @classmethod
    def _endpoint_to_str(cls, value):
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value

    @field_validator("port", mode="before")
    @classmethod
    def _port_to_str(cls, value):
        if value is None or value == "":
            return None
        return str(value)

    @field_validator("protocol", "description", mode="before")
    @classmethod
    def _none_to_empty(cls, value):
        return value or ""

    def to_connection(self) -> DetectedConnection:
        return DetectedConnection(
            source=self.source,
            target=self.target,
            protocol=self.protocol,
            port=self.port,
            encrypted=self.encrypted,
            description=self.description,
        )


class SecondaryDetectionPayload(_Lenient):
    label: str = Field(validation_alias=AliasChoices("label", "class_name"))
    type_code: str = Field(validation_alias=AliasChoices("typeCode", "backend_type", "type_code"))
    confidence: float = Field(ge=0.0, le=1.0)
    bbox_normalized: Dict[str, float] = Field(
        default_factory=dict, validation_alias=AliasChoices("bboxNormalized", "bbox_normalized")
    )
    bbox_pixels: Dict[str, float] = Field(
        default_factory=dict, validation_alias=AliasChoices("bboxPixels", "bbox_pixels")
    )

    def to_detection(self) -> SecondaryDetection:
        return SecondaryDetection(
            label=self.label,
            type_code=normalize_component_type(self.type_code),
            confidence=self.confidence,
            bbox_normalized=self.bbox_normalized,
            bbox_pixels=self.bbox_pixels,
        )


class ThreatPayload(_Lenient):
    category: str
    description: str = ""
    severity: str
    countermeasures: List[str] = Field(default_factory=list)
    severity_justification: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("severityJustification", "severity_justification")
    )
    existing_mitigation: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("existingMitigation", "existing_mitigation")
    )
    affected_data: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("affectedData", "affected_data")
    )

    @field_validator("category")
    @classmethod
    def _known_category(cls, value):
        category = normalize_threat_category(value)
        if category is None:
            raise ValueError(f"unknown STRIDE category: {value}")
        return category.value

    @field_validator("severity")
    @classmethod
    def _known_severity(cls, value):
        return Severity(str(value).strip().lower()).value

    @field_validator("description", mode="before")
    @classmethod
    def _none_to_empty(cls, value):
        return value or ""

    @field_validator("countermeasures", mode="before")
    @classmethod
    def _countermeasures_list(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        return [str(v) for v in value if v]

    def to_finding(self) -> ThreatFinding:
        return ThreatFinding(
            category=normalize_threat_category(self.category),
            description=self.description,
            severity=Severity(self.severity),
            countermeasures=self.countermeasures,
            severity_justification=self.severity_justification,
            existing_mitigation=self.existing_mitigation,
            affected_data=self.affected_data,
        )


def extract_json(content: Union[str, bytes, Dict[str, Any], None]) -> Dict[str, Any]:
    """Decode a JSON object, tolerating a surrounding markdown code block"""
    if isinstance(content, dict):
        return content
    if content is None:
        raise MalformedResponse("Empty response")
    if isinstance(content, bytes):
        content = content.decode("utf-8", errors="ignore")

    match = _FENCE_RE.search(content)
    json_string = match.group(1) if match else content
    try:
        data = json.loads(json_string.strip())
    except json.JSONDecodeError as e:
        raise MalformedResponse(f"Response is not valid JSON: {e}") from e

    if not isinstance(data, dict):
        raise MalformedResponse(f"Expected a JSON object, got {type(data).__name__}")
    return data


def _list_field(data: Dict[str, Any], *keys: str) -> list:
    for key in keys:
        value = data.get(key)
        if value is None:
            continue
        if not isinstance(value, list):
            raise MalformedResponse(f"Field '{key}' must be a list")
        return value
    return []


def _parse_items(items: list, schema, what: str) -> list:
    parsed = []
    for item in items:
        try:
            parsed.append(schema.model_validate(item))
        except ValidationError as e:
            logger.warning(f"Dropping malformed {what}: {e.error_count()} validation errors")
    return parsed


def parse_primary_detection(content) -> PrimaryDetectionResult:
    """Parse a primary detector response into a PrimaryDetectionResult"""
    data = extract_json(content)

    provider = data.get("detectedProvider") or data.get("provider") or "unknown"
    mitigations = [str(m) for m in _list_field(data, "existingMitigations", "mitigations") if m]

    components = []
    seen_ids = set()
    for payload in _parse_items(_list_field(data, "components"), ComponentPayload, "component"):
        if payload.id in seen_ids:
            logger.warning(f"Dropping duplicate component id: {payload.id}")
            continue
        seen_ids.add(payload.id)
        components.append(payload.to_component())

    connections = [
        payload.to_connection()
        for payload in _parse_items(_list_field(data, "connections"), ConnectionPayload, "connection")
    ]

    return PrimaryDetectionResult(
        provider=str(provider),
        mitigations=mitigations,
        components=components,
        connections=connections,
    )


def parse_secondary_prediction(content) -> SecondaryDetectionResult:
    """Parse a secondary detector /predict response"""
    data = extract_json(content)
    detections = [
        payload.to_detection()
        for payload in _parse_items(_list_field(data, "detections"), SecondaryDetectionPayload, "detection")
    ]
    inference_time = data.get("inferenceTimeMs", data.get("inference_time_ms"))
    return SecondaryDetectionResult(
        available=True,
        detections=detections,
        inference_time_ms=float(inference_time) if isinstance(inference_time, (int, float)) else None,
    )


def parse_threat_analysis(content) -> List[ThreatFinding]:
    """Parse a threat analysis response; missing 'threats' means no findings"""
    data = extract_json(content)
    return [
        payload.to_finding()
        for payload in _parse_items(_list_field(data, "threats"), ThreatPayload, "threat")
    ]
