"""
Primary component detector - vision language model reading the diagram
Semantically rich (names, descriptions, connections, mitigations) but with
no calibrated confidence
"""
import base64
import logging
from abc import ABC, abstractmethod

from openai import OpenAI
from config import Settings, get_settings
from models.canonical import ComponentType, PrimaryDetectionResult
from services.capability_schemas import parse_primary_detection
from services.errors import MalformedResponse

logger = logging.getLogger(__name__)


LANGUAGE_INSTRUCTIONS = {
    "pt-BR": "All free text (names, descriptions, mitigations) MUST be in Brazilian Portuguese.",
    "en-US": "All free text (names, descriptions, mitigations) MUST be in American English.",
}


class PrimaryDetector(ABC):
    """Contract for the primary detector"""

    @abstractmethod
    def detect(self, image: bytes, mime_type: str, language: str) -> PrimaryDetectionResult:
        """
        Detect components and connections in a diagram

        Raises on transport errors and MalformedResponse on unparseable output;
        the job worker substitutes an empty result in both cases.
        """


class OpenAIPrimaryDetector(PrimaryDetector):
    """Primary detector backed by an OpenAI vision model"""

    def __init__(self, settings: Settings = None, client: OpenAI = None):
        settings = settings or get_settings()
        self.enabled = bool(settings.enable_ai_analysis and (settings.openai_api_key or client))
        self.client = client or (OpenAI(api_key=settings.openai_api_key) if self.enabled else None)
        self.model = settings.openai_model
        if self.enabled:
            logger.info(f"Primary detector initialized with model: {self.model}")
        else:
            logger.info("Primary detector disabled")

    def detect(self, image: bytes, mime_type: str, language: str) -> PrimaryDetectionResult:
        if not self.enabled:
            logger.info("Component detection skipped (AI analysis disabled)")
            return PrimaryDetectionResult.empty()

        logger.info(f"Detecting components ({len(image)} bytes, {mime_type}, language: {language})")

        image_url = f"data:{mime_type};base64,{base64.b64encode(image).decode('ascii')}"

        response = self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": self._get_system_prompt(language)},
                {
                    "role": "user",
                    "content": [
                        {"type": "image_url", "image_url": {"url": image_url}},
                        {"type": "text", "text": "Extract the architecture from this diagram. Return only JSON."},
                    ],
                },
            ],
            response_format={"type": "json_object"},
            temperature=0.1,
            max_tokens=4096
        )

        content = response.choices[0].message.content
        if not content:
            raise MalformedResponse("Primary detector returned no content")

        result = parse_primary_detection(content)
        logger.info(f"Detected provider: {result.provider}")
        logger.info(f"Detected {len(result.components)} components, {len(result.connections)} connections")
        logger.info(f"Existing mitigations: {', '.join(result.mitigations) or 'none'}")
        return result

    def _get_system_prompt(self, language: str) -> str:
        types = ", ".join(t.value for t in ComponentType)
        instruction = LANGUAGE_INSTRUCTIONS.get(language, LANGUAGE_INSTRUCTIONS["pt-BR"])
        return f"""You are a cloud security architect reading an architecture diagram.

{instruction}

Return JSON with this structure:
{{
  "detectedProvider": "aws|azure|gcp|multi-cloud|on-prem",
  "existingMitigations": ["security controls visible in the diagram"],
  "components": [
    {{
      "id": "kebab-case-id",
      "name": "Service Name",
      "type": "one of: {types}",
      "provider": "aws|azure|gcp|custom",
      "description": "Role in this architecture",
      "existingSecurityControls": ["control"],
      "autoScaling": false,
      "replicaOf": "id of the primary if this is a replica, else null"
    }}
  ],
  "connections": [
    {{"from": "component-id", "to": "component-id", "protocol": "HTTPS", "port": "443",
      "description": "What flows here", "encrypted": true}}
  ]
}}

Every connection endpoint MUST be a component id. Do not invent components."""
