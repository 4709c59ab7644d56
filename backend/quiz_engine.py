import csv
import io
import re
import logging
import zipfile
from typing import Iterable, List, Optional

from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException
from pydantic import ValidationError as PydanticValidationError

import config
from errors import ValidationError
from models import Question

logger = logging.getLogger(__name__)

DEFAULT_QUESTIONS: List[Question] = [
    Question(text="What is 5 + 3?", options=["6", "7", "8", "9"],
             correct_index=2, time_limit_seconds=15),
    Question(text="What is the capital of Indonesia?", options=["Bandung", "Jakarta", "Surabaya", "Medan"],
             correct_index=1, time_limit_seconds=15),
    Question(text="Which planet is closest to the sun?", options=["Venus", "Mercury", "Earth", "Mars"],
             correct_index=1, time_limit_seconds=15),
    Question(text="How many days are in a leap year?", options=["364", "365", "366", "367"],
             correct_index=2, time_limit_seconds=15),
    Question(text="2 x 8 = ?", options=["14", "16", "18", "20"],
             correct_index=1, time_limit_seconds=10),
    Question(text="Which language runs in the web browser frontend?", options=["Python", "JavaScript", "Java", "C++"],
             correct_index=1, time_limit_seconds=12),
    Question(text="What does HTTP stand for?",
             options=["HyperText Transfer Protocol", "High Transfer Text Protocol",
                      "HyperText Transport Protocol", "High Text Transfer Protocol"],
             correct_index=0, time_limit_seconds=15),
    Question(text="What is 12 x 12?", options=["124", "144", "154", "164"],
             correct_index=1, time_limit_seconds=10),
]

OPTION_LETTERS = ("A", "B", "C", "D")

# Accepted spreadsheet headers, compared case-insensitively with spaces removed
QUESTION_COLUMNS = ("question", "text")
OPTION_COLUMNS = (
    ("optiona", "a"),
    ("optionb", "b"),
    ("optionc", "c"),
    ("optiond", "d"),
)
CORRECT_COLUMNS = ("correct", "answer", "correctindex")
TIMER_COLUMNS = ("timer", "time", "timelimit", "timelimitseconds")

EXCEL_EXTENSIONS = (".xlsx", ".xlsm")
ZIP_SIGNATURE = b"PK\x03\x04"


def sanitize_text(text: str) -> str:
    """Strip HTML tags and control characters from user-supplied text."""
    text = re.sub(r'<[^>]+>', '', text)
    text = re.sub(r'[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]', '', text)
    return text.strip()


def default_questions() -> List[Question]:
    return list(DEFAULT_QUESTIONS)


def validate_questions(raw) -> List[Question]:
    """Validate a whole custom batch. One bad question rejects all of them."""
    if not isinstance(raw, list) or not raw:
        raise ValidationError("Questions must be a non-empty list")
    questions = []
    for i, item in enumerate(raw):
        if not isinstance(item, dict):
            raise ValidationError(f"Question {i + 1} must be an object")
        try:
            question = Question.model_validate(item)
            # Rebuild so the sanitized text goes through the validators again
            question = Question(
                text=sanitize_text(question.text),
                options=[sanitize_text(opt) for opt in question.options],
                correct_index=question.correct_index,
                time_limit_seconds=question.time_limit_seconds,
            )
        except PydanticValidationError as e:
            first = e.errors()[0]
            logger.info("Rejected question %d: %s", i + 1, first.get("msg"))
            raise ValidationError(f"Question {i + 1} is invalid: {first.get('msg')}")
        questions.append(question)
    return questions


def _normalize_row(row: dict) -> dict:
    return {
        re.sub(r'\s+', '', (key or '')).lower(): (value or '').strip()
        for key, value in row.items()
        if isinstance(value, str) or value is None
    }


def _first(row: dict, keys) -> str:
    for key in keys:
        if row.get(key):
            return row[key]
    return ''


def _parse_correct(value: str) -> int:
    value = value.strip().upper()
    if value in OPTION_LETTERS:
        return OPTION_LETTERS.index(value)
    try:
        return max(0, min(3, int(float(value))))
    except ValueError:
        return 0


def _parse_timer(value: str) -> int:
    try:
        timer = int(float(value))
    except ValueError:
        timer = config.DEFAULT_TIME_LIMIT
    if timer <= 0:
        timer = config.DEFAULT_TIME_LIMIT
    return max(config.MIN_TIME_LIMIT, min(config.MAX_TIME_LIMIT, timer))


def _cell_text(value) -> str:
    if value is None:
        return ''
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value)


def _rows_to_questions(rows: Iterable[dict]) -> List[Question]:
    """Expected columns: question, optionA..optionD, correct (A-D or 0-3), timer.

    Rows without question text are skipped; blank options fall back to their
    letter and the timer is clamped to the allowed range.
    """
    questions: List[Question] = []
    for row in rows:
        row = _normalize_row(row)
        question_text = sanitize_text(_first(row, QUESTION_COLUMNS))
        if not question_text:
            continue
        options = [
            sanitize_text(_first(row, keys)) or OPTION_LETTERS[i]
            for i, keys in enumerate(OPTION_COLUMNS)
        ]
        questions.append(Question(
            text=question_text,
            options=options,
            correct_index=_parse_correct(_first(row, CORRECT_COLUMNS)),
            time_limit_seconds=_parse_timer(_first(row, TIMER_COLUMNS)),
        ))

    if not questions:
        raise ValidationError("No valid questions found in file")
    logger.info("Parsed %d questions from upload", len(questions))
    return questions


def parse_question_csv(content: bytes) -> List[Question]:
    """Parse an uploaded CSV into questions."""
    try:
        text = content.decode("utf-8-sig")
    except UnicodeDecodeError:
        raise ValidationError("File must be UTF-8 encoded CSV")
    return _rows_to_questions(csv.DictReader(io.StringIO(text)))


def parse_question_xlsx(content: bytes) -> List[Question]:
    """Parse the first worksheet of an uploaded Excel workbook into questions.

    The first row holds the headers, with the same names as the CSV columns.
    """
    try:
        workbook = load_workbook(io.BytesIO(content), read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, KeyError, OSError) as e:
        logger.info("Unreadable workbook upload: %s", e)
        raise ValidationError("Could not read Excel file")
    try:
        rows = workbook.worksheets[0].iter_rows(values_only=True)
        header = next(rows, None)
        if header is None:
            raise ValidationError("No valid questions found in file")
        keys = [_cell_text(cell) for cell in header]
        records = [dict(zip(keys, (_cell_text(cell) for cell in row))) for row in rows]
    finally:
        workbook.close()
    return _rows_to_questions(records)


def parse_question_file(filename: Optional[str], content: bytes) -> List[Question]:
    """Pick the parser from the file extension, falling back to sniffing the zip signature."""
    name = (filename or '').lower()
    if name.endswith(EXCEL_EXTENSIONS) or content.startswith(ZIP_SIGNATURE):
        return parse_question_xlsx(content)
    if name.endswith(".xls"):
        raise ValidationError("Legacy .xls files are not supported, save the sheet as .xlsx")
    return parse_question_csv(content)


def question_summary(question: Optional[Question]) -> Optional[dict]:
    """Public view of a question, without the answer."""
    if question is None:
        return None
    return {
        "text": question.text,
        "options": list(question.options),
        "timeLimitSeconds": question.time_limit_seconds,
    }
