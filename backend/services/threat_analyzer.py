"""
STRIDE threat analysis capability - one model call per component
"""
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List

from openai import OpenAI
from config import Settings, get_settings
from models.canonical import DetectedComponent, ThreatCategory, ThreatFinding
from services.capability_schemas import parse_threat_analysis
from services.errors import MalformedResponse

logger = logging.getLogger(__name__)


@dataclass
class AnalysisContext:
    """Architecture-wide context carried into every component analysis"""
    provider: str = "unknown"
    mitigations: List[str] = field(default_factory=list)
    language: str = "pt-BR"


class ThreatAnalyzer(ABC):
    """Contract for the threat analysis capability"""

    @abstractmethod
    def analyze(
        self,
        component: DetectedComponent,
        connection_summary: str,
        context: AnalysisContext
    ) -> List[ThreatFinding]:
        """
        Enumerate STRIDE threats for one component

        Raises MalformedResponse when the answer cannot be parsed (the
        component then gets no findings); any other exception is fatal.
        """


class OpenAIThreatAnalyzer(ThreatAnalyzer):
    """Threat analyzer backed by an OpenAI chat model"""

    def __init__(self, settings: Settings = None, client: OpenAI = None):
        settings = settings or get_settings()
        self.enabled = bool(settings.enable_ai_analysis and (settings.openai_api_key or client))
        self.client = client or (OpenAI(api_key=settings.openai_api_key) if self.enabled else None)
        self.model = settings.openai_model

    def analyze(self, component, connection_summary, context):
        if not self.enabled:
            logger.info(f"STRIDE analysis skipped for {component.name} (AI analysis disabled)")
            return []

        logger.info(f"Analyzing STRIDE for component: {component.name} (language: {context.language})")

        response = self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": self._get_system_prompt(context.language)},
                {"role": "user", "content": self._build_prompt(component, connection_summary, context)},
            ],
            response_format={"type": "json_object"},
            temperature=0.2,
            max_tokens=2048
        )

        content = response.choices[0].message.content
        if not content:
            raise MalformedResponse(f"Empty threat analysis for {component.id}")

        threats = parse_threat_analysis(content)
        logger.info(f"Found {len(threats)} threats for {component.name}")
        return threats

    def _build_prompt(self, component: DetectedComponent, connection_summary: str, context: AnalysisContext) -> str:
        descriptor = {
            "name": component.name,
            "type": component.type.value,
            "provider": component.provider or context.provider,
            "description": component.description,
            "replicaOf": component.replica_of or "none",
            "autoScaling": component.is_auto_scaling,
            "existingSecurityControls": ", ".join(component.existing_security_controls) or "none",
        }
        return (
            f"COMPONENT:\n{json.dumps(descriptor, ensure_ascii=False, indent=2)}\n\n"
            f"CONNECTIONS: {connection_summary}\n\n"
            f"ARCHITECTURE EXISTING MITIGATIONS: {', '.join(context.mitigations) or 'none'}"
        )

    def _get_system_prompt(self, language: str) -> str:
        categories = ", ".join(c.value for c in ThreatCategory)
        output_language = "Brazilian Portuguese" if language == "pt-BR" else "American English"
        return f"""You are a cloud security expert performing STRIDE threat analysis on one component.
Write all text in {output_language}. Acknowledge existing mitigations and be specific to this component.

Return JSON:
{{
  "threats": [
    {{
      "category": "one of: {categories}",
      "description": "How this component could be attacked",
      "severity": "low|medium|high|critical",
      "severityJustification": "why",
      "existingMitigation": "what already helps, if anything",
      "affectedData": "data at risk",
      "countermeasures": ["at most 5 concrete actions"]
    }}
  ]
}}"""
