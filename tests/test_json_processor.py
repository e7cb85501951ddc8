import json

import pytest

from content_import.api.schemas.shared import ErrorSeverity, ErrorType
from content_import.domain.imports.processors.json_processor import (
    parse_import_payload,
    validate_json_payload,
)
from tests.utils.documents import make_questions_document


@pytest.mark.parametrize(
    "payload",
    [
        b'{"type": "questions", "questions": [',
        "{'type': 'questions'}",
        b"\xff\xfe\x00garbage",
        b"[1, 2, 3]",
        "",
    ],
)
def test_malformed_payload_yields_single_critical_issue(payload):
    document, result = validate_json_payload(payload)

    assert document is None
    assert result.is_valid is False
    assert len(result.errors) == 1
    assert result.errors[0].type == ErrorType.VALIDATION
    assert result.errors[0].severity == ErrorSeverity.CRITICAL


def test_parse_error_reports_position():
    _, failure = parse_import_payload('{\n  "type": "questions",\n  oops\n}')
    assert "ligne 3" in failure.errors[0].message


def test_utf8_bom_is_accepted():
    raw = "\ufeff" + json.dumps(make_questions_document(2))
    document, failure = parse_import_payload(raw.encode("utf-8"))
    assert failure is None
    assert document["type"] == "questions"


def test_valid_payload_is_validated():
    document, result = validate_json_payload(json.dumps(make_questions_document(4)))
    assert document is not None
    assert result.is_valid is True
    assert result.summary.total_items == 4
