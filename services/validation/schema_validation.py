from functools import lru_cache
from pathlib import Path
import json
from typing import List, Tuple

import jsonschema

from services.extraction.doc_types import DocumentType

REPO_ROOT = Path(__file__).resolve().parents[2]
SCHEMA_DIR = REPO_ROOT / "config" / "schemas"


@lru_cache(maxsize=None)
def _load_schema(doc_type: str) -> dict:
    schema_path = SCHEMA_DIR / f"{doc_type}.schema.json"
    if not schema_path.exists():
        raise FileNotFoundError(f"Schema not found: {schema_path}")
    return json.loads(schema_path.read_text(encoding="utf-8"))


def validate_with_schema(data: dict, document_type: DocumentType) -> Tuple[bool, List[str]]:
    """
    Returns (is_valid, errors). Every violation is reported, not just the first,
    so a reviewer sees the full list next to the extracted fields.
    """
    schema = _load_schema(DocumentType.parse(document_type).value)
    validator = jsonschema.Draft7Validator(schema)
    errors = []
    for e in sorted(validator.iter_errors(data), key=lambda e: [str(p) for p in e.path]):
        where = ".".join(str(p) for p in e.path)
        errors.append(f"{where}: {e.message}" if where else e.message)
    return (not errors), errors
