"""
Threat Enumeration Stage - STRIDE analysis for every canonical component, in order
"""
import logging
from typing import Callable, List, Optional

from models.canonical import (
    MAX_COUNTERMEASURES,
    ComponentThreatSet,
    DetectedComponent,
    DetectedConnection,
)
from services.errors import MalformedResponse
from services.threat_analyzer import AnalysisContext, ThreatAnalyzer

logger = logging.getLogger(__name__)


# Percentage band owned by this stage: 0-30 is detection, 90-100 is the report
STAGE_START = 30
STAGE_SPAN = 60

ProgressCallback = Callable[[int, int, DetectedComponent], None]


def component_progress(index: int, total: int) -> int:
    """30 + round(60 * index / total), rounding halves up"""
    if total <= 0:
        return STAGE_START
    return STAGE_START + int(STAGE_SPAN * index / total + 0.5)


def summarize_connections(component_id: str, connections: List[DetectedConnection]) -> str:
    """One line per connection touching the component"""
    lines = [c.summary_line() for c in connections if c.touches(component_id)]
    return "; ".join(lines) if lines else "No connections identified"


class ThreatEnumerationStage:
    """Drives the threat analyzer over the canonical component list"""

    def __init__(self, analyzer: ThreatAnalyzer):
        self.analyzer = analyzer

    def run(
        self,
        components: List[DetectedComponent],
        connections: List[DetectedConnection],
        context: AnalysisContext,
        on_component: Optional[ProgressCallback] = None
    ) -> List[ComponentThreatSet]:
        """
        Analyze every component once

        Args:
            components: Canonical component list (merge output)
            connections: Connections between canonical components
            context: Provider / mitigations / language for the analyzer
            on_component: Called with (index, total, component) before each analysis

        Returns:
            One ComponentThreatSet per component, in component order. A
            malformed answer yields an empty set; any other error propagates.
        """
        threat_sets: List[ComponentThreatSet] = []
        total = len(components)

        for index, component in enumerate(components):
            if on_component:
                on_component(index, total, component)

            if component.replica_of:
                logger.info(f"Analyzing replica {component.name} (replica of {component.replica_of})")

            summary = summarize_connections(component.id, connections)
            try:
                threats = self.analyzer.analyze(component, summary, context)
            except MalformedResponse as e:
                logger.warning(f"Threat analysis for {component.id} unusable, recording no threats: {e}")
                threats = []

            for threat in threats:
                threat.countermeasures = list(threat.countermeasures or [])[:MAX_COUNTERMEASURES]

            threat_sets.append(ComponentThreatSet(component_id=component.id, threats=threats))

        return threat_sets
