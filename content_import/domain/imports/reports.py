"""
Import reports built from a job's results, errors and timestamps only.
"""
import csv
import io
import json
from collections import Counter
from typing import Any, Dict, List

from content_import.api.schemas.shared import (
    BatchJob,
    ErrorBreakdown,
    ErrorSeverity,
    ImportReport,
    ItemStatus,
    ReportSummary,
    ValidationIssue,
)
from content_import.domain.imports.error_policy import analyze_error_patterns
from content_import.utils.serialization import _make_json_safe

REPORT_FORMATS = ("json", "csv")


def build_report(job: BatchJob) -> ImportReport:
    successful = [r for r in job.results if r.status == ItemStatus.SUCCESS]
    failed = [r for r in job.results if r.status == ItemStatus.ERROR]
    skipped = [r for r in job.results if r.status == ItemStatus.SKIPPED]

    total = len(job.results)
    success_rate = round(len(successful) / total * 100, 2) if total else 0.0

    severities = Counter(e.severity for e in job.errors)
    breakdown = ErrorBreakdown(
        critical=severities.get(ErrorSeverity.CRITICAL, 0),
        major=severities.get(ErrorSeverity.MAJOR, 0),
        minor=severities.get(ErrorSeverity.MINOR, 0),
        warning=severities.get(ErrorSeverity.WARNING, 0),
    )

    processing_seconds = None
    if job.started_at and job.completed_at:
        processing_seconds = round((job.completed_at - job.started_at).total_seconds(), 3)

    return ImportReport(
        job_id=job.id,
        file_name=job.file_name,
        status=job.status,
        started_at=job.started_at,
        completed_at=job.completed_at,
        summary=ReportSummary(
            total=total,
            successful=len(successful),
            failed=len(failed),
            skipped=len(skipped),
            success_rate=success_rate,
        ),
        error_breakdown=breakdown,
        errors=list(job.errors),
        successful_items=successful,
        failed_items=failed,
        recommendations=_recommendations(job.errors, success_rate, total),
        processing_seconds=processing_seconds,
    )


def _recommendations(errors: List[ValidationIssue], success_rate: float, total: int) -> List[str]:
    recommendations = analyze_error_patterns(errors)
    if total and success_rate < 50:
        recommendations.append(
            "Moins de la moitié des éléments ont été importés : vérifiez le format du fichier avant de relancer"
        )
    if any(e.type.value == "mapping" for e in errors):
        recommendations.append("Certaines catégories sont à associer ou à créer avant un nouvel import")
    return recommendations


def export_report(report: ImportReport, fmt: str = "json") -> str:
    """
    Serialize a report.

    Args:
        report: Report from ``build_report``.
        fmt: ``json`` or ``csv``.
    """
    if fmt == "json":
        return json.dumps(_make_json_safe(report), indent=2, ensure_ascii=False)
    if fmt == "csv":
        return _report_to_csv(report)
    raise ValueError(f"Unsupported report format: {fmt}")


def _report_to_csv(report: ImportReport) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")

    writer.writerow(["# Rapport d'Import"])
    writer.writerow(["Job ID", report.job_id])
    writer.writerow(["Fichier", report.file_name])
    writer.writerow(["Statut", report.status.value])
    writer.writerow(["Début", report.started_at.isoformat() if report.started_at else ""])
    writer.writerow(["Fin", report.completed_at.isoformat() if report.completed_at else ""])
    writer.writerow(["Durée (s)", report.processing_seconds if report.processing_seconds is not None else ""])
    writer.writerow([])

    writer.writerow(["# Résumé"])
    writer.writerow(["Métrique", "Valeur"])
    writer.writerow(["Total", report.summary.total])
    writer.writerow(["Réussis", report.summary.successful])
    writer.writerow(["Échoués", report.summary.failed])
    writer.writerow(["Ignorés", report.summary.skipped])
    writer.writerow(["Taux de réussite (%)", report.summary.success_rate])

    if report.errors:
        writer.writerow([])
        writer.writerow(["# Erreurs Détaillées"])
        writer.writerow(["Type", "Sévérité", "Index", "Champ", "Message", "Suggestion"])
        for error in report.errors:
            writer.writerow([
                error.type.value,
                error.severity.value,
                "" if error.item_index is None else error.item_index,
                error.field or "",
                error.message,
                error.suggestion or "",
            ])
    return buffer.getvalue()


def error_statistics(errors: List[ValidationIssue]) -> Dict[str, Any]:
    """Counts by type, severity and field, plus the most common messages."""
    return {
        "total": len(errors),
        "by_type": dict(Counter(e.type.value for e in errors)),
        "by_severity": dict(Counter(e.severity.value for e in errors)),
        "by_field": dict(Counter(e.field for e in errors if e.field)),
        "most_common_messages": [
            {"message": message, "count": count}
            for message, count in Counter(e.message for e in errors).most_common(5)
        ],
    }
