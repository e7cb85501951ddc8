"""
Conversion of question CSV files into ``questions`` import documents.

Files may be comma, semicolon or tab separated, with or without a header
row. Quoted cells use doubled quotes for escaping. Without a header the
columns are read by position: question, option A-D, correct answer,
explanation, category, difficulty, level, tags.
"""
import csv
import io
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import pandas as pd

from content_import.api.schemas.shared import (
    ErrorSeverity,
    ErrorType,
    OptionItem,
    QuestionItem,
    ValidationIssue,
)
from content_import.domain.imports.exceptions import CSVConversionError

logger = logging.getLogger(__name__)

SUPPORTED_DELIMITERS = [",", ";", "\t"]

HEADER_KEYWORDS = [
    "question", "option", "correct", "answer", "reponse", "explanation", "explication",
    "category", "categorie", "difficulty", "difficulte", "level", "niveau", "tags",
]

POSITIONAL_COLUMNS = [
    "question", "option_a", "option_b", "option_c", "option_d", "correct",
    "explanation", "category", "difficulty", "level", "tags",
]

_HEADER_ALIASES = [
    ("option_a", ("optiona", "reponsea")),
    ("option_b", ("optionb", "reponseb")),
    ("option_c", ("optionc", "reponsec")),
    ("option_d", ("optiond", "reponsed")),
    ("correct", ("correct", "answer", "bonnereponse")),
    ("explanation", ("explanation", "explication")),
    ("category", ("category", "categorie")),
    ("difficulty", ("difficulty", "difficulte")),
    ("level", ("level", "niveau")),
    ("tags", ("tags",)),
    ("question", ("question", "text", "enonce")),
]

_SINGLE_LETTER_HEADERS = {"a": "option_a", "b": "option_b", "c": "option_c", "d": "option_d"}

MAX_TAGS = 10


@dataclass
class CSVConversionResult:
    document: Dict[str, Any]
    issues: List[ValidationIssue] = field(default_factory=list)
    delimiter: str = ","
    has_header: bool = False
    rows_read: int = 0
    rows_converted: int = 0


def _header_token(cell: str) -> str:
    folded = (
        cell.lower()
        .replace("é", "e").replace("è", "e").replace("ê", "e")
        .replace("à", "a").replace("ç", "c")
    )
    return re.sub(r"[^a-z]", "", folded)


def _decode(file_content: bytes) -> str:
    try:
        return file_content.decode("utf-8-sig")
    except UnicodeDecodeError:
        logger.info("CSV is not UTF-8; decoding as latin-1")
        return file_content.decode("latin-1")


def detect_delimiter(sample_lines: List[str]) -> str:
    """Score each delimiter by presence and column-count consistency."""
    best, best_score = SUPPORTED_DELIMITERS[0], -1.0
    lines = [line for line in sample_lines if line.strip()]
    for delimiter in SUPPORTED_DELIMITERS:
        counts = [len(row) for row in csv.reader(lines, delimiter=delimiter)]
        score = float(sum(1 for line in lines if delimiter in line))
        if counts and max(counts) > 1:
            average = sum(counts) / len(counts)
            consistent = sum(1 for count in counts if abs(count - average) <= 1)
            score += consistent / len(counts) * 10
        if score > best_score:
            best, best_score = delimiter, score
    return best


def detect_header(first_row: List[str], second_row: Optional[List[str]]) -> bool:
    keyword_hits = sum(
        1 for cell in first_row if any(k in _header_token(cell) for k in HEADER_KEYWORDS)
    )
    if second_row is None:
        return keyword_hits >= 2
    data_hits = sum(
        1
        for cell in second_row
        if len(cell) > 10
        or cell.strip().lower() in {"easy", "medium", "hard", "pass", "las", "both"}
    )
    return keyword_hits >= 2 and data_hits >= 1


def map_columns(header: Optional[List[str]]) -> Dict[str, int]:
    if header is None:
        return {name: index for index, name in enumerate(POSITIONAL_COLUMNS)}

    mapping: Dict[str, int] = {}
    for index, cell in enumerate(header):
        token = _header_token(cell)
        target = _SINGLE_LETTER_HEADERS.get(token)
        if target is None:
            target = next(
                (name for name, aliases in _HEADER_ALIASES if any(a in token for a in aliases)),
                None,
            )
        if target is not None and target not in mapping:
            mapping[target] = index
    return mapping


def parse_correct_answer(value: str, option_count: int) -> int:
    """Index of the correct option for ``A``-``D`` or ``1``-``4``; -1 when invalid."""
    answer = value.strip().upper()
    if re.fullmatch(r"[A-D]", answer):
        index = ord(answer) - ord("A")
    elif re.fullmatch(r"[1-4]", answer):
        index = int(answer) - 1
    else:
        return -1
    return index if index < option_count else -1


def parse_difficulty(value: str) -> str:
    normalized = value.strip().lower()
    if normalized in {"easy", "facile", "1"}:
        return "easy"
    if normalized in {"hard", "difficile", "3"}:
        return "hard"
    return "medium"


def parse_level(value: str) -> str:
    normalized = value.strip().upper()
    if normalized in {"PASS", "LAS"}:
        return normalized
    return "both"


def parse_tags(value: str) -> List[str]:
    tags = [tag.strip() for tag in re.split(r"[,;|]", value or "") if tag.strip()]
    return tags[:MAX_TAGS]


def _cell(row: List[str], mapping: Dict[str, int], name: str) -> str:
    index = mapping.get(name)
    if index is None or index >= len(row):
        return ""
    return (row[index] or "").strip()


def convert_row(row: List[str], mapping: Dict[str, int], default_category: str) -> QuestionItem:
    question_text = _cell(row, mapping, "question")
    option_a = _cell(row, mapping, "option_a")
    option_b = _cell(row, mapping, "option_b")
    correct = _cell(row, mapping, "correct")
    if not question_text or not option_a or not option_b or not correct:
        raise ValueError("Champs requis manquants (question, options A/B, réponse correcte)")

    options = [OptionItem(text=option_a), OptionItem(text=option_b)]
    for name in ("option_c", "option_d"):
        text = _cell(row, mapping, name)
        if text:
            options.append(OptionItem(text=text))

    correct_index = parse_correct_answer(correct, len(options))
    if correct_index == -1:
        raise ValueError(f"Réponse correcte invalide: \"{correct}\"")
    options[correct_index].is_correct = True

    return QuestionItem(
        question_text=question_text,
        options=options,
        explanation=_cell(row, mapping, "explanation") or None,
        category=_cell(row, mapping, "category") or default_category,
        difficulty=parse_difficulty(_cell(row, mapping, "difficulty")),
        level=parse_level(_cell(row, mapping, "level")),
        tags=parse_tags(_cell(row, mapping, "tags")),
    )


def convert_csv_to_document(
    file_content: bytes,
    *,
    max_rows: int = 1000,
    max_file_size_mb: int = 10,
    default_category: str = "Général",
    delimiter: Optional[str] = None,
) -> CSVConversionResult:
    """
    Convert a CSV upload into a ``questions`` import document.

    Rows that cannot be converted are skipped and reported as major
    validation issues; the caller validates the resulting document as usual.

    Raises:
        CSVConversionError: When the file is empty, too large or has too many rows.
    """
    if len(file_content) > max_file_size_mb * 1024 * 1024:
        raise CSVConversionError(f"Fichier trop volumineux (maximum {max_file_size_mb} MB)")

    text = _decode(file_content)
    if not text.strip():
        raise CSVConversionError("Fichier CSV vide")

    if delimiter is None:
        delimiter = detect_delimiter(text.splitlines()[:5])

    try:
        frame = pd.read_csv(
            io.StringIO(text),
            sep=delimiter,
            header=None,
            dtype=str,
            keep_default_na=False,
            skip_blank_lines=True,
            quotechar='"',
            doublequote=True,
            engine="python",
        )
    except (pd.errors.ParserError, pd.errors.EmptyDataError) as exc:
        raise CSVConversionError(f"CSV illisible: {exc}") from exc

    # Short rows come back as NaN even with keep_default_na=False.
    frame = frame.fillna("")
    rows = [[str(value) for value in record] for record in frame.itertuples(index=False, name=None)]
    if not rows:
        raise CSVConversionError("Fichier CSV vide")

    has_header = detect_header(rows[0], rows[1] if len(rows) > 1 else None)
    header = rows[0] if has_header else None
    data_rows = rows[1:] if has_header else rows
    if len(data_rows) > max_rows:
        raise CSVConversionError(f"Trop de lignes: {len(data_rows)} (maximum {max_rows})")

    mapping = map_columns(header)
    questions: List[Dict[str, Any]] = []
    issues: List[ValidationIssue] = []
    first_line = 2 if has_header else 1
    for offset, row in enumerate(data_rows):
        line_number = first_line + offset
        if not any(cell.strip() for cell in row):
            continue
        try:
            item = convert_row(row, mapping, default_category)
        except ValueError as exc:
            issues.append(
                ValidationIssue(
                    type=ErrorType.VALIDATION,
                    severity=ErrorSeverity.MAJOR,
                    message=f"Ligne {line_number}: {exc}",
                    field=f"row {line_number}",
                )
            )
            continue
        questions.append(item.model_dump(by_alias=True, exclude_none=True))

    logger.info(
        "Converted %d/%d CSV rows (delimiter=%r, header=%s)",
        len(questions),
        len(data_rows),
        delimiter,
        has_header,
    )
    return CSVConversionResult(
        document={
            "version": "1.0",
            "type": "questions",
            "metadata": {"source": "csv-import"},
            "questions": questions,
        },
        issues=issues,
        delimiter=delimiter,
        has_header=has_header,
        rows_read=len(data_rows),
        rows_converted=len(questions),
    )


def generate_csv_template(delimiter: str = ",") -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, delimiter=delimiter, lineterminator="\n")
    writer.writerow([
        "questionText", "optionA", "optionB", "optionC", "optionD",
        "correctAnswer", "explanation", "category", "difficulty", "level", "tags",
    ])
    writer.writerow([
        "Quelle est la fonction principale du coeur ?",
        "Pomper le sang", "Filtrer le sang", "Produire des hormones", "Stocker l'oxygène",
        "A", "Le coeur est une pompe musculaire.", "Cardiologie", "easy", "PASS", "anatomie,coeur",
    ])
    return buffer.getvalue()
