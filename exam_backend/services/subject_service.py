"""
exam_backend/services/subject_service.py
Static subject catalog

Subjects and their subcategories are reference data; questions point at
them by key. The catalog is not editable through the API.
"""
from typing import Dict, List, Optional

from exam_backend.errors import BadRequestError, ErrorCode

SUBJECT_CATALOG: Dict[str, dict] = {
    "math": {
        "name": "Matemática",
        "subcategories": [
            {"id": "algebra", "name": "Álgebra"},
            {"id": "trigonometry", "name": "Trigonometría"},
            {"id": "geometry", "name": "Geometría"},
            {"id": "calculus", "name": "Cálculo"},
        ],
    },
    "communication": {
        "name": "Comunicación",
        "subcategories": [
            {"id": "grammar", "name": "Gramática"},
            {"id": "literature", "name": "Literatura"},
            {"id": "oral", "name": "Comunicación Oral"},
            {"id": "written", "name": "Comunicación Escrita"},
        ],
    },
}


def get_subject_info(subject_id: str) -> Optional[dict]:
    subject = SUBJECT_CATALOG.get(subject_id)
    if subject is None:
        return None
    return {
        "id": subject_id,
        "name": subject["name"],
        "subcategories": [dict(sc) for sc in subject["subcategories"]],
    }


def get_subcategory_info(subject_id: str, subcategory_id: str) -> Optional[dict]:
    """Subcategory entry, or None if it does not belong to the subject."""
    subject = SUBJECT_CATALOG.get(subject_id)
    if subject is None:
        return None
    for subcategory in subject["subcategories"]:
        if subcategory["id"] == subcategory_id:
            return {"id": subcategory["id"], "name": subcategory["name"], "subject_id": subject_id}
    return None


def get_available_subjects() -> List[dict]:
    return [get_subject_info(subject_id) for subject_id in SUBJECT_CATALOG]


def validate_subject(subject_id: str) -> dict:
    subject = get_subject_info(subject_id)
    if subject is None:
        raise BadRequestError(
            "Invalid subject",
            ErrorCode.INVALID_SUBJECT,
            details={"subject_id": subject_id, "allowed": list(SUBJECT_CATALOG)},
        )
    return subject


def validate_subject_pair(subject_id: str, subcategory_id: str) -> dict:
    """Ensure the subject exists and the subcategory belongs to it."""
    validate_subject(subject_id)
    subcategory = get_subcategory_info(subject_id, subcategory_id)
    if subcategory is None:
        raise BadRequestError(
            "Invalid subcategory for the selected subject",
            ErrorCode.INVALID_SUBJECT,
            details={"subject_id": subject_id, "subcategory_id": subcategory_id},
        )
    return subcategory
