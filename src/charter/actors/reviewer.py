from __future__ import annotations

import re
from typing import Any

from charter.actors.base import Actor

SEVERITY_PATTERN = re.compile(r"Severity:\s*(CRITICAL|HIGH|MEDIUM|LOW)", re.IGNORECASE)
VETO_PATTERN = re.compile(r"VETO:\s*(YES|NO)", re.IGNORECASE)
RISK_MARKERS = ("🔴", "🟠", "🟡", "🟢")


class ReviewerActor(Actor):
    """Security/architecture reviewer; a veto makes the subtask unsuccessful."""

    role = "reviewer"
    instructions = """
You are the security and architecture reviewer.
Identify vulnerabilities, performance problems and architectural concerns.
Report "Severity: CRITICAL|HIGH|MEDIUM|LOW" and "VETO: YES|NO" (YES for CRITICAL or HIGH).
""".strip()

    def parse_output(self, content: str) -> tuple[bool, Any]:
        severity_match = SEVERITY_PATTERN.search(content)
        veto_match = VETO_PATTERN.search(content)
        veto = bool(veto_match and veto_match.group(1).upper() == "YES")
        output = {
            "full_response": content,
            "severity": severity_match.group(1).upper() if severity_match else "UNKNOWN",
            "veto": veto,
            "risk_count": sum(content.count(marker) for marker in RISK_MARKERS),
            "has_critical_issues": "CRITICAL" in content or "🔴" in content,
        }
        return not veto, output
