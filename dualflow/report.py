#!/usr/bin/env python3
"""
dualflow/report.py
══════════════════

Rendering of correlation findings.

Output formats
──────────────
  • text  : classic one-liner per finding plus both traces
  • json  : one JSON object per finding (list)
  • sarif : SARIF 2.1.0, one result per finding whose ``codeFlows`` entry
            holds two ``threadFlows`` (flow A and flow B)

:func:`write_reports` renders the findings of several rules (one per
catalogue) as a single document.  If ``$DUALFLOW_GENERATE_SARIF`` names a
file, it additionally writes SARIF there whatever the primary format is.

Usage
─────
    from dualflow.report import write_report

    write_report(result.findings(), "text", sys.stdout, rule_id="cookieSplit")
"""

from __future__ import annotations

import enum
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import (
    Any,
    Dict,
    List,
    Optional,
    Sequence,
    TextIO,
)

from . import __version__
from .correlation import Finding
from .path_graph import PathNode

logger = logging.getLogger(__name__)

SARIF_ENV_VAR = "DUALFLOW_GENERATE_SARIF"


# ═════════════════════════════════════════════════════════════════════════
#  SEVERITY / FORMAT
# ═════════════════════════════════════════════════════════════════════════

class Severity(enum.Enum):
    """
    Finding severity.

    Each carries:
      • label       : the string used in text output
      • sarif_level : SARIF 2.1.0 ``level`` string
    """

    ERROR = ("error", "error")
    WARNING = ("warning", "warning")
    NOTE = ("note", "note")

    def __init__(self, label: str, sarif_level: str) -> None:
        self.label = label
        self.sarif_level = sarif_level

    @classmethod
    def from_string(cls, s: str) -> "Severity":
        s_low = s.strip().lower()
        for member in cls:
            if member.label == s_low:
                return member
        return cls.WARNING


class ReportFormat(enum.Enum):
    TEXT = "text"
    JSON = "json"
    SARIF = "sarif"


# ═════════════════════════════════════════════════════════════════════════
#  HELPERS
# ═════════════════════════════════════════════════════════════════════════

def _step_dict(pn: PathNode) -> Dict[str, Any]:
    node = pn.node
    return {
        "node": node.id,
        "label": node.label,
        "routine": node.routine.name,
        "context": list(pn.context.sites),
        "file": node.file or node.routine.file,
        "line": node.line,
    }


def finding_to_dict(finding: Finding) -> Dict[str, Any]:
    """JSON-compatible description of one finding."""
    return {
        "message": finding.description,
        "source1": _step_dict(finding.source1),
        "source2": _step_dict(finding.source2),
        "sink1": _step_dict(finding.sink1),
        "sink2": _step_dict(finding.sink2),
        "trace_a": [_step_dict(pn) for pn in finding.trace_a],
        "trace_b": [_step_dict(pn) for pn in finding.trace_b],
        "joint_steps": finding.joint_steps,
    }


def format_text(
    finding: Finding,
    severity: Severity = Severity.WARNING,
    rule_id: str = "correlatedFlows",
) -> str:
    """``[file:line]: (severity) message [id]`` followed by both traces."""
    lines = [
        f"[{finding.sink1.node.location}]: ({severity.label}) "
        f"{finding.description} [{rule_id}]"
    ]
    for tag, trace in (("A", finding.trace_a), ("B", finding.trace_b)):
        steps = " -> ".join(str(pn.node) for pn in trace)
        lines.append(f"  flow {tag}: {steps}")
    return "\n".join(lines)


# ═════════════════════════════════════════════════════════════════════════
#  SARIF 2.1.0 BUILDER
# ═════════════════════════════════════════════════════════════════════════

class SarifBuilder:
    """Accumulates findings and renders a SARIF 2.1.0 log."""

    SARIF_VERSION = "2.1.0"
    SARIF_SCHEMA = (
        "https://raw.githubusercontent.com/oasis-tcs/sarif-spec/master/"
        "Schemata/sarif-schema-2.1.0.json"
    )

    def __init__(self) -> None:
        self._results: List[Dict[str, Any]] = []
        self._rules: Dict[str, Dict[str, Any]] = {}

    @staticmethod
    def _location(pn: PathNode, message: Optional[str] = None) -> Dict[str, Any]:
        node = pn.node
        loc: Dict[str, Any] = {
            "physicalLocation": {
                "artifactLocation": {"uri": node.file or node.routine.file or node.routine.name},
            },
            "logicalLocations": [{"name": node.routine.name, "kind": "function"}],
        }
        if node.line:
            loc["physicalLocation"]["region"] = {"startLine": node.line}
        if message:
            loc["message"] = {"text": message}
        return loc

    def _thread_flow(self, trace: Sequence[PathNode]) -> Dict[str, Any]:
        return {
            "locations": [
                {"location": self._location(pn, pn.node.label or pn.node.id)}
                for pn in trace
            ]
        }

    def add(
        self,
        finding: Finding,
        rule_id: str = "correlatedFlows",
        severity: Severity = Severity.WARNING,
        rule_description: str = "",
    ) -> None:
        if rule_id not in self._rules:
            self._rules[rule_id] = {
                "id": rule_id,
                "shortDescription": {"text": rule_description or rule_id},
                "properties": {"kind": "path-problem"},
            }

        result: Dict[str, Any] = {
            "ruleId": rule_id,
            "level": severity.sarif_level,
            "message": {"text": finding.description},
            "locations": [self._location(finding.sink1)],
            "relatedLocations": [
                dict(self._location(pn, role), id=idx)
                for idx, (pn, role) in enumerate((
                    (finding.source1, "source 1"),
                    (finding.source2, "source 2"),
                    (finding.sink2, "sink 2"),
                ))
            ],
            "codeFlows": [
                {
                    "threadFlows": [
                        self._thread_flow(finding.trace_a),
                        self._thread_flow(finding.trace_b),
                    ]
                }
            ],
            "properties": {"jointSteps": finding.joint_steps},
        }
        self._results.append(result)

    def to_dict(self, tool_name: str = "dualflow", version: str = __version__) -> Dict[str, Any]:
        return {
            "$schema": self.SARIF_SCHEMA,
            "version": self.SARIF_VERSION,
            "runs": [
                {
                    "tool": {
                        "driver": {
                            "name": tool_name,
                            "version": version,
                            "rules": list(self._rules.values()),
                        }
                    },
                    "results": self._results,
                }
            ],
        }

    def to_json(self, tool_name: str = "dualflow", version: str = __version__) -> str:
        return json.dumps(self.to_dict(tool_name, version), indent=2)

    def write(self, path: str, tool_name: str = "dualflow", version: str = __version__) -> None:
        Path(path).write_text(self.to_json(tool_name, version), encoding="utf-8")


# ═════════════════════════════════════════════════════════════════════════
#  ENTRY POINT
# ═════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class RuleFindings:
    """The findings of one rule (one catalogue) and how to label them."""

    rule_id: str
    findings: Sequence[Finding]
    severity: Severity = Severity.WARNING
    description: str = ""


def write_reports(
    batches: Sequence[RuleFindings],
    fmt: str,
    stream: TextIO,
) -> int:
    """Write every batch to *stream* as one document; return the count written.

    Text output lists all findings followed by a single summary line.  JSON
    output is one list whose entries carry their ``rule``.  SARIF output is
    one log with a rule per batch.
    """
    report_format = ReportFormat(fmt)
    total = sum(len(b.findings) for b in batches)

    sarif: Optional[SarifBuilder] = None
    sarif_path = os.environ.get(SARIF_ENV_VAR, "")
    if report_format is ReportFormat.SARIF or sarif_path:
        sarif = SarifBuilder()
        for batch in batches:
            for f in batch.findings:
                sarif.add(f, batch.rule_id, batch.severity, batch.description)

    if report_format is ReportFormat.TEXT:
        for batch in batches:
            for f in batch.findings:
                stream.write(format_text(f, batch.severity, batch.rule_id) + "\n")
        stream.write(f"\n--- {total} finding(s) ---\n")
    elif report_format is ReportFormat.JSON:
        entries = [
            dict(finding_to_dict(f), rule=batch.rule_id, severity=batch.severity.label)
            for batch in batches
            for f in batch.findings
        ]
        json.dump(entries, stream, indent=2)
        stream.write("\n")
    else:
        stream.write(sarif.to_json() + "\n")

    if sarif_path:
        sarif.write(sarif_path)
        logger.info("SARIF written to %s", sarif_path)

    return total


def write_report(
    findings: Sequence[Finding],
    fmt: str,
    stream: TextIO,
    *,
    rule_id: str = "correlatedFlows",
    severity: Severity = Severity.WARNING,
    rule_description: str = "",
) -> int:
    """Write the findings of a single rule; see :func:`write_reports`."""
    return write_reports(
        [RuleFindings(rule_id, findings, severity, rule_description)], fmt, stream
    )


__all__ = [
    "Severity",
    "ReportFormat",
    "SARIF_ENV_VAR",
    "finding_to_dict",
    "format_text",
    "SarifBuilder",
    "RuleFindings",
    "write_reports",
    "write_report",
]
