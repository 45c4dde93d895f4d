"""
Canonical Threat Model Data Model
Universal representation of detected architecture components and STRIDE findings,
independent of which detector produced them
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Dict, Optional, Any
from enum import Enum


MAX_COUNTERMEASURES = 5


class JobStatus(str, Enum):
    """Analysis job status"""
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class JobStage(str, Enum):
    """Pipeline stage reported in progress snapshots"""
    WAITING = "waiting"
    DETECTING_COMPONENTS = "detecting_components"
    ANALYZING_STRIDE = "analyzing_stride"
    GENERATING_REPORT = "generating_report"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStage.COMPLETED, JobStage.FAILED)


class Provenance(str, Enum):
    """Which detector(s) identified a component"""
    PRIMARY = "primary"
    SECONDARY = "secondary"
    HYBRID = "hybrid"


class Severity(str, Enum):
    """Threat severity levels"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ThreatCategory(str, Enum):
    """STRIDE categories"""
    SPOOFING = "Spoofing"
    TAMPERING = "Tampering"
    REPUDIATION = "Repudiation"
    INFORMATION_DISCLOSURE = "Information Disclosure"
    DENIAL_OF_SERVICE = "Denial of Service"
    ELEVATION_OF_PRIVILEGE = "Elevation of Privilege"


class ComponentType(str, Enum):
    """Closed vocabulary of architecture component types"""
    USER = "user"
    CDN = "cdn"
    WAF = "waf"
    LOAD_BALANCER = "load_balancer"
    SERVER = "server"
    DATABASE = "database"
    CACHE = "cache"
    STORAGE = "storage"
    SEARCH = "search"
    QUEUE = "queue"
    SERVERLESS = "serverless"
    MONITORING = "monitoring"
    SECURITY = "security"
    EMAIL = "email"
    BACKUP = "backup"
    NETWORK = "network"
    API = "api"
    FIREWALL = "firewall"
    EXTERNAL_SERVICE = "external_service"


_TYPE_ALIASES = {
    "loadbalancer": ComponentType.LOAD_BALANCER,
    "load-balancer": ComponentType.LOAD_BALANCER,
    "external": ComponentType.EXTERNAL_SERVICE,
    "external-service": ComponentType.EXTERNAL_SERVICE,
}


def normalize_component_type(value: Any) -> ComponentType:
    """Map a free-form type code onto the closed vocabulary (unknown -> external_service)"""
    if isinstance(value, ComponentType):
        return value
    code = str(value or "").strip().lower().replace(" ", "_")
    if code in _TYPE_ALIASES:
        return _TYPE_ALIASES[code]
    try:
        return ComponentType(code)
    except ValueError:
        return ComponentType.EXTERNAL_SERVICE


def normalize_threat_category(value: Any) -> Optional[ThreatCategory]:
    """Match a category by value or enum name, case-insensitively"""
    if isinstance(value, ThreatCategory):
        return value
    text = str(value or "").strip().lower().replace("_", " ")
    for category in ThreatCategory:
        if text in (category.value.lower(), category.name.lower().replace("_", " ")):
            return category
    return None


@dataclass
class DetectedComponent:
    """A component of the analysed architecture"""
    id: str
    name: str
    type: ComponentType
    description: str = ""
    provenance: Provenance = Provenance.PRIMARY
    secondary_confidence: Optional[float] = None
    replica_of: Optional[str] = None
    provider: Optional[str] = None
    existing_security_controls: List[str] = field(default_factory=list)
    is_auto_scaling: bool = False
    availability_zone: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "name": self.name,
            "type": self.type.value,
            "description": self.description,
            "provenance": self.provenance.value,
            "existingSecurityControls": list(self.existing_security_controls),
            "isAutoScaling": self.is_auto_scaling,
        }
        if self.secondary_confidence is not None:
            data["secondaryConfidence"] = self.secondary_confidence
        if self.replica_of:
            data["replicaOf"] = self.replica_of
        if self.provider:
            data["provider"] = self.provider
        if self.availability_zone:
            data["availabilityZone"] = self.availability_zone
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DetectedComponent":
        return cls(
            id=data["id"],
            name=data.get("name", data["id"]),
            type=normalize_component_type(data.get("type")),
            description=data.get("description", ""),
            provenance=Provenance(data.get("provenance", "primary")),
            secondary_confidence=data.get("secondaryConfidence"),
            replica_of=data.get("replicaOf"),
            provider=data.get("provider"),
            existing_security_controls=list(data.get("existingSecurityControls", [])),
            is_auto_scaling=bool(data.get("isAutoScaling", False)),
            availability_zone=data.get("availabilityZone"),
        )


@dataclass
class DetectedConnection:
    """A data flow between two components"""
    source: str
    target: str
    protocol: str = ""
    port: Optional[str] = None
    encrypted: Optional[bool] = None
    description: str = ""

    def touches(self, component_id: str) -> bool:
        return self.source == component_id or self.target == component_id

    def summary_line(self) -> str:
        port = f":{self.port}" if self.port else ""
        return f"{self.source} -> {self.target} ({self.protocol}{port}): {self.description}"

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "from": self.source,
            "to": self.target,
            "protocol": self.protocol,
            "description": self.description,
        }
        if self.port:
            data["port"] = self.port
        if self.encrypted is not None:
            data["encrypted"] = self.encrypted
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DetectedConnection":
        return cls(
            source=data["from"],
            target=data["to"],
            protocol=data.get("protocol", ""),
            port=data.get("port"),
            encrypted=data.get("encrypted"),
            description=data.get("description", ""),
        )


@dataclass
class ThreatFinding:
    """A single STRIDE finding for a component"""
    category: ThreatCategory
    description: str
    severity: Severity
    countermeasures: List[str] = field(default_factory=list)
    severity_justification: Optional[str] = None
    existing_mitigation: Optional[str] = None
    affected_data: Optional[str] = None

    def __post_init__(self):
        self.countermeasures = list(self.countermeasures or [])[:MAX_COUNTERMEASURES]

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "category": self.category.value,
            "description": self.description,
            "severity": self.severity.value,
            "countermeasures": list(self.countermeasures),
        }
        if self.severity_justification:
            data["severityJustification"] = self.severity_justification
        if self.existing_mitigation:
            data["existingMitigation"] = self.existing_mitigation
        if self.affected_data:
            data["affectedData"] = self.affected_data
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ThreatFinding":
        return cls(
            category=ThreatCategory(data["category"]),
            description=data.get("description", ""),
            severity=Severity(data["severity"]),
            countermeasures=data.get("countermeasures", []),
            severity_justification=data.get("severityJustification"),
            existing_mitigation=data.get("existingMitigation"),
            affected_data=data.get("affectedData"),
        )


@dataclass
class ComponentThreatSet:
    """All findings for one canonical component"""
    component_id: str
    threats: List[ThreatFinding] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "componentId": self.component_id,
            "threats": [t.to_dict() for t in self.threats],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ComponentThreatSet":
        return cls(
            component_id=data["componentId"],
            threats=[ThreatFinding.from_dict(t) for t in data.get("threats", [])],
        )


@dataclass
class Summary:
    """Threat counts derived from the component threat sets"""
    total_components: int = 0
    total_threats: int = 0
    critical_threats: int = 0
    high_threats: int = 0
    medium_threats: int = 0
    low_threats: int = 0

    @classmethod
    def from_threat_sets(cls, total_components: int, threat_sets: List[ComponentThreatSet]) -> "Summary":
        summary = cls(total_components=total_components)
        for threat_set in threat_sets:
            for threat in threat_set.threats:
                summary.total_threats += 1
                if threat.severity == Severity.CRITICAL:
                    summary.critical_threats += 1
                elif threat.severity == Severity.HIGH:
                    summary.high_threats += 1
                elif threat.severity == Severity.MEDIUM:
                    summary.medium_threats += 1
                elif threat.severity == Severity.LOW:
                    summary.low_threats += 1
        return summary

    def to_dict(self) -> Dict[str, int]:
        return {
            "totalComponents": self.total_components,
            "totalThreats": self.total_threats,
            "criticalThreats": self.critical_threats,
            "highThreats": self.high_threats,
            "mediumThreats": self.medium_threats,
            "lowThreats": self.low_threats,
        }


@dataclass
class DetectionMeta:
    """Bookkeeping about the two detectors for one run"""
    secondary_available: bool = False
    secondary_detections: int = 0
    primary_detections: int = 0
    merged_components: int = 0
    secondary_inference_time_ms: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "secondaryAvailable": self.secondary_available,
            "secondaryDetections": self.secondary_detections,
            "primaryDetections": self.primary_detections,
            "mergedComponents": self.merged_components,
        }
        if self.secondary_inference_time_ms is not None:
            data["secondaryInferenceTimeMs"] = self.secondary_inference_time_ms
        return data


@dataclass
class PrimaryDetectionResult:
    """Output of the primary (vision language model) detector"""
    provider: str = "unknown"
    mitigations: List[str] = field(default_factory=list)
    components: List[DetectedComponent] = field(default_factory=list)
    connections: List[DetectedConnection] = field(default_factory=list)

    @classmethod
    def empty(cls) -> "PrimaryDetectionResult":
        return cls()


@dataclass
class SecondaryDetection:
    """One box from the secondary (object detection) detector"""
    label: str
    type_code: ComponentType
    confidence: float
    bbox_normalized: Dict[str, float] = field(default_factory=dict)
    bbox_pixels: Dict[str, float] = field(default_factory=dict)


@dataclass
class SecondaryDetectionResult:
    """Output of the secondary detector; unavailable means it was never called"""
    available: bool = False
    detections: List[SecondaryDetection] = field(default_factory=list)
    inference_time_ms: Optional[float] = None

    @classmethod
    def unavailable(cls) -> "SecondaryDetectionResult":
        return cls(available=False)


@dataclass
class AnalysisResult:
    """Aggregate root persisted when a job completes"""
    provider: str
    mitigations: List[str]
    components: List[DetectedComponent]
    connections: List[DetectedConnection]
    threat_sets: List[ComponentThreatSet]
    detection_meta: DetectionMeta = field(default_factory=DetectionMeta)

    @property
    def summary(self) -> Summary:
        return Summary.from_threat_sets(len(self.components), self.threat_sets)

    def validate(self) -> None:
        """Every component has exactly one threat set and vice versa"""
        component_ids = [c.id for c in self.components]
        set_ids = [s.component_id for s in self.threat_sets]
        if len(set(set_ids)) != len(set_ids):
            raise ValueError("Duplicate componentId in threat sets")
        if set(set_ids) != set(component_ids):
            missing = sorted(set(component_ids) - set(set_ids))
            unknown = sorted(set(set_ids) - set(component_ids))
            raise ValueError(f"Threat sets do not match components (missing={missing}, unknown={unknown})")


@dataclass
class ProgressSnapshot:
    """Point-in-time pipeline progress, both persisted and published"""
    analysis_id: str
    status: JobStatus
    stage: JobStage
    message: str = ""
    percentage: int = 0
    current_component: int = 0
    total_components: int = 0
    timestamp: datetime = field(default_factory=datetime.utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.FAILED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.analysis_id,
            "status": self.status.value,
            "progress": {
                "step": self.stage.value,
                "message": self.message,
                "percentage": self.percentage,
                "currentComponent": self.current_component,
                "totalComponents": self.total_components,
                "updatedAt": self.timestamp.isoformat() if self.timestamp else None,
            },
        }
