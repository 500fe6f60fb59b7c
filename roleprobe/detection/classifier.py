"""
Signal Classifier
=================
Decides whether one payload execution exposed a vulnerability.

Layers, checked per detection rule of the payload's category:
1. response content - body (or DOM for reflective categories) contains an
   indicator, or the raw payload for reflective categories
2. console - events recorded since the test started contain an indicator,
   or the injected alert/eval hook fired
3. timing - only for timing_analysis rules

Indicators already present in the baseline page are ignored. A weak signal
(payload echoed back without an indicator, indicator without reflection)
raises DetectionAmbiguous so the caller can record it as not vulnerable.
"""

from dataclasses import dataclass
from typing import Optional, List, Sequence, Iterable

from ..errors import DetectionAmbiguous
from ..models import VulnerabilityType, DetectionMethod

EXECUTION_MARKERS = ("SECURITY_EVENT_ALERT", "SECURITY_EVENT_EVAL")
TIMING_THRESHOLD_MS = 4000


@dataclass(frozen=True)
class Detection:
    rule: VulnerabilityType
    signal: str          # response, dom, console, timing
    indicator: str


class SignalClassifier:

    def __init__(self, vulnerability_types: Iterable[VulnerabilityType], reflective_categories=("xss",),
                 timing_threshold_ms: int = TIMING_THRESHOLD_MS):
        self.vulnerability_types = list(vulnerability_types)
        self.reflective_categories = set(reflective_categories)
        self.timing_threshold_ms = timing_threshold_ms

    def rules_for(self, category: str) -> List[VulnerabilityType]:
        return [v for v in self.vulnerability_types if v.category == category]

    def classify(
        self,
        category: str,
        payload: str,
        body: str = "",
        dom: str = "",
        console_events: Sequence = (),
        response_time_ms: int = 0,
        baseline: str = "",
    ) -> Optional[Detection]:
        """
        Returns the first confident Detection, None when nothing fired.

        Raises:
            DetectionAmbiguous: only weak signals were seen.
        """
        weak = []
        reflective = category in self.reflective_categories

        for rule in self.rules_for(category):
            fresh = [i for i in rule.indicators if i not in baseline]

            if rule.detection_method in (DetectionMethod.RESPONSE_ANALYSIS, DetectionMethod.ERROR_DETECTION):
                if reflective:
                    if payload and payload in body:
                        return Detection(rule, "response", payload)
                    if payload and payload in dom:
                        return Detection(rule, "dom", payload)
                    hit = _first_in(fresh, body)
                    if hit:
                        weak.append(f"indicator '{hit}' without payload reflection")
                else:
                    hit = _first_in(fresh, body)
                    if hit:
                        return Detection(rule, "response", hit)
                    if payload and payload in body:
                        weak.append("payload echoed without indicator")

            if rule.detection_method is DetectionMethod.TIMING_ANALYSIS:
                if response_time_ms >= self.timing_threshold_ms:
                    return Detection(rule, "timing", f"{response_time_ms}ms")

            for event in console_events:
                text = getattr(event, "text", str(event))
                kind = getattr(event, "kind", "")
                if reflective and (kind == "dialog" or any(m in text for m in EXECUTION_MARKERS)):
                    return Detection(rule, "console", text[:120])
                hit = _first_in(rule.indicators, text)
                if hit:
                    return Detection(rule, "console", hit)

        if weak:
            raise DetectionAmbiguous(category, "; ".join(weak))
        return None


def _first_in(indicators: Iterable[str], haystack: str) -> Optional[str]:
    if not haystack:
        return None
    for indicator in indicators:
        if indicator in haystack:
            return indicator
    return None
