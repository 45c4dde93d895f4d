"""
Merge Engine - reconciles primary and secondary detections into one
canonical component list

Philosophy:
- Primary components are always kept (they carry names, descriptions, connections)
- Secondary detections only confirm (hybrid) or add (secondary) components
- Matching is by type code only, first unconsumed detection wins. Two
  components of the same type can bind to the "wrong" box; there is no
  spatial matching.
"""
import logging
from dataclasses import dataclass, field, replace
from typing import List, Optional, Set

from models.canonical import (
    DetectedComponent,
    DetectionMeta,
    PrimaryDetectionResult,
    Provenance,
    SecondaryDetection,
    SecondaryDetectionResult,
)

logger = logging.getLogger(__name__)


SECONDARY_CONFIDENCE_THRESHOLD = 0.08


@dataclass
class MergeOutcome:
    """Canonical component list plus detector bookkeeping"""
    components: List[DetectedComponent] = field(default_factory=list)
    meta: DetectionMeta = field(default_factory=DetectionMeta)


def label_to_name(label: str) -> str:
    """'load_balancer' -> 'Load Balancer'"""
    return label.replace("_", " ").title()


def merge_detections(
    primary: List[DetectedComponent],
    secondary: Optional[List[SecondaryDetection]],
    threshold: float = SECONDARY_CONFIDENCE_THRESHOLD
) -> List[DetectedComponent]:
    """
    Merge primary components with secondary detections

    Args:
        primary: Components from the primary detector, in order
        secondary: Detections from the secondary detector in their original
            order, or None if it was unavailable
        threshold: Minimum confidence for an unmatched detection to become a component

    Returns:
        Canonical component list: every primary component exactly once (in
        order), followed by synthesized secondary-only components
    """
    if not secondary:
        return [
            replace(c, provenance=Provenance.PRIMARY, secondary_confidence=None)
            for c in primary
        ]

    consumed: Set[int] = set()
    merged: List[DetectedComponent] = []

    for component in primary:
        match_index = None
        for index, detection in enumerate(secondary):
            if index in consumed:
                continue
            if detection.type_code == component.type:
                match_index = index
                break

        if match_index is None:
            merged.append(replace(component, provenance=Provenance.PRIMARY, secondary_confidence=None))
        else:
            consumed.add(match_index)
            merged.append(replace(
                component,
                provenance=Provenance.HYBRID,
                secondary_confidence=secondary[match_index].confidence
            ))

    used_ids = {c.id for c in merged}
    synthesized = 0
    for index, detection in enumerate(secondary):
        if index in consumed:
            continue
        if detection.confidence < threshold:
            logger.debug(f"Discarding secondary detection {detection.label} ({detection.confidence:.2f})")
            continue

        synthesized += 1
        component_id = _unique_id(f"secondary-{detection.type_code.value}-{synthesized}", used_ids)
        used_ids.add(component_id)
        name = label_to_name(detection.label)
        merged.append(DetectedComponent(
            id=component_id,
            name=name,
            type=detection.type_code,
            description=f"{name} detected by the secondary detector",
            provenance=Provenance.SECONDARY,
            secondary_confidence=detection.confidence,
        ))

    hybrid = sum(1 for c in merged if c.provenance == Provenance.HYBRID)
    logger.info(
        f"Merged {len(primary)} primary + {len(secondary)} secondary detections: "
        f"{hybrid} hybrid, {synthesized} secondary-only, {len(merged)} total"
    )
    return merged


def _unique_id(candidate: str, used_ids: Set[str]) -> str:
    unique = candidate
    suffix = 2
    while unique in used_ids:
        unique = f"{candidate}-{suffix}"
        suffix += 1
    return unique


def reconcile(
    primary: PrimaryDetectionResult,
    secondary: SecondaryDetectionResult,
    secondary_available: bool
) -> MergeOutcome:
    """Merge both detector results and record detection metadata"""
    detections = secondary.detections if secondary.available else None
    components = merge_detections(primary.components, detections)

    meta = DetectionMeta(
        secondary_available=secondary_available,
        secondary_detections=len(secondary.detections),
        primary_detections=len(primary.components),
        merged_components=len(components),
        secondary_inference_time_ms=secondary.inference_time_ms,
    )
    return MergeOutcome(components=components, meta=meta)
