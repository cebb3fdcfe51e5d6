from __future__ import annotations

from typing import Mapping

from ..core.metrics import record_quality_finding
from ..schemas.agents import QAOutput, QualityFinding, Severity
from ..schemas.pipeline import QualityReport
from .context import ExecutionContext
from .errors import QAValidatorError
from .graph import Phase, TaskGraph
from .state import NodeRecord, NodeStatus

UNAVAILABLE_STATUSES = frozenset({NodeStatus.DEGRADED, NodeStatus.FAILED, NodeStatus.ABORTED, NodeStatus.CANCELLED})


def validator_unavailable(node_id: str, record: NodeRecord, *, reason: str | None = None) -> QualityFinding:
    error = QAValidatorError(reason or record.error or f"{node_id} did not complete")
    return QualityFinding(
        source=node_id,
        severity=Severity.HIGH,
        category="validator-unavailable",
        message=f"Validator {node_id} could not run: {error}",
    )


def build_quality_report(
    graph: TaskGraph,
    records: Mapping[str, NodeRecord],
    context: ExecutionContext,
) -> QualityReport:
    """Merge the QA fan-out outputs into one report.

    Validators are visited in graph order and each validator's findings keep
    their own order. A validator that did not succeed contributes a single
    high-severity meta-finding instead of findings, as does one that
    succeeded without a committed output.
    """
    report = QualityReport()
    for node in graph.nodes_in(Phase.QA):
        record = records.get(node.node_id)
        if record is None or record.status is NodeStatus.SKIPPED:
            continue
        if record.status is NodeStatus.SUCCEEDED:
            output = context.get(node.node_id)
            if output is None:
                report.findings.append(validator_unavailable(node.node_id, record, reason="its output was not recorded"))
                report.unavailable_validators.append(node.node_id)
                continue
            if not isinstance(output, QAOutput):
                continue
            for finding in output.findings:
                report.findings.append(finding.model_copy(update={"source": node.node_id}))
            if output.score is not None:
                report.scores[node.node_id] = output.score
        elif record.status in UNAVAILABLE_STATUSES:
            report.findings.append(validator_unavailable(node.node_id, record))
            report.unavailable_validators.append(node.node_id)

    for finding in report.findings:
        record_quality_finding(source=finding.source, severity=finding.severity.value)
    return report
