import json
import logging
from typing import Any, Dict, Optional, Tuple, Union

from content_import.api.schemas.shared import (
    ErrorSeverity,
    ErrorType,
    ValidationIssue,
    ValidationResult,
    ValidationSummary,
)
from content_import.domain.imports.validators import ValidationEngine

logger = logging.getLogger(__name__)


def _parse_failure(message: str) -> ValidationResult:
    return ValidationResult(
        is_valid=False,
        errors=[
            ValidationIssue(
                type=ErrorType.VALIDATION,
                severity=ErrorSeverity.CRITICAL,
                message=message,
                suggestion="Vérifiez la syntaxe JSON du fichier",
            )
        ],
        summary=ValidationSummary(),
    )


def parse_import_payload(
    file_content: Union[bytes, str],
) -> Tuple[Optional[Dict[str, Any]], Optional[ValidationResult]]:
    """
    Decode and parse a JSON import file.

    Returns:
        ``(document, None)`` on success, ``(None, failure)`` when the payload is
        not valid UTF-8 JSON or not an object. The failure holds exactly one
        critical validation issue.
    """
    if isinstance(file_content, bytes):
        try:
            file_content = file_content.decode("utf-8-sig")
        except UnicodeDecodeError as exc:
            logger.warning("Rejected import payload: not UTF-8 (%s)", exc)
            return None, _parse_failure(f"Encodage invalide, UTF-8 attendu: {exc.reason}")

    try:
        data = json.loads(file_content)
    except json.JSONDecodeError as exc:
        logger.warning("Rejected import payload: malformed JSON at line %s col %s", exc.lineno, exc.colno)
        return None, _parse_failure(
            f"JSON invalide (ligne {exc.lineno}, colonne {exc.colno}): {exc.msg}"
        )

    if not isinstance(data, dict):
        return None, _parse_failure("Le fichier JSON doit contenir un objet à la racine")
    return data, None


def validate_json_payload(
    file_content: Union[bytes, str],
    engine: Optional[ValidationEngine] = None,
) -> Tuple[Optional[Dict[str, Any]], ValidationResult]:
    """Parse then validate; never raises for malformed input."""
    document, failure = parse_import_payload(file_content)
    if failure is not None:
        return None, failure
    return document, (engine or ValidationEngine()).validate(document)
