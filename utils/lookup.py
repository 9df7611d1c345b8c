"""
Department Lookup

Loads ``departments.csv`` (header ``department,department_code``) into a
name → code map used to enrich valid records. Names are matched exactly
(case-sensitive, surrounding whitespace ignored); unknown names map to UNK.
"""

import csv
import logging
from pathlib import Path

from utils.errors import ConfigurationError

logger = logging.getLogger(__name__)

UNKNOWN_DEPARTMENT_CODE = "UNK"

REQUIRED_COLUMNS = ("department", "department_code")


def _fail(message: str) -> ConfigurationError:
    logger.error(message)
    return ConfigurationError(message)


def load_departments(path: str) -> dict[str, str]:
    """
    Build the department name → code map.

    Rows with a blank name or code are skipped with a warning.

    Raises:
        ConfigurationError: If the file is missing, unreadable, malformed or
            yields no usable rows
    """
    csv_path = Path(path)
    if not csv_path.is_file():
        raise _fail(f"Departments CSV not found: {path}")

    dept_map: dict[str, str] = {}
    try:
        with open(csv_path, "r", encoding="utf-8", newline="") as f:
            reader = csv.DictReader(f)
            missing = [col for col in REQUIRED_COLUMNS if col not in (reader.fieldnames or [])]
            if missing:
                raise _fail(f"Departments CSV {path} is missing columns: {', '.join(missing)}")

            # Line 1 is the header
            for line_num, row in enumerate(reader, 2):
                name = (row.get("department") or "").strip()
                code = (row.get("department_code") or "").strip()
                if not name or not code:
                    logger.warning(
                        "Skipping incomplete departments row",
                        extra={"file_path": path, "row_number": line_num},
                    )
                    continue
                dept_map[name] = code

    except (OSError, csv.Error) as e:
        raise _fail(f"Cannot read departments CSV {path}: {e}") from e

    if not dept_map:
        raise _fail(f"No valid departments found in CSV: {path}")

    logger.info("Loaded %d departments from %s", len(dept_map), path)
    return dept_map


def lookup_department_code(dept_map: dict[str, str], department: str) -> str:
    """Case-sensitive lookup, falling back to the UNK sentinel."""
    return dept_map.get(department, UNKNOWN_DEPARTMENT_CODE)
