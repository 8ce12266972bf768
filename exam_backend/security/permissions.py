"""
exam_backend/security/permissions.py
Static role -> capability table

Each role's set is listed in full. There is no inheritance between roles;
admin and super_admin simply carry the same entries.
"""
from typing import Dict, FrozenSet, Iterable, Optional


class Permission:
    MANAGE_ADMINS = "manage_admins"
    MANAGE_COURSES = "manage_courses"
    MANAGE_QUESTIONS = "manage_questions"
    MANAGE_STUDENTS = "manage_students"
    GENERATE_REPORTS = "generate_reports"
    VIEW_AUDIT_LOGS = "view_audit_logs"
    MANAGE_GRADES = "manage_grades"
    MANAGE_CONTENT = "manage_content"
    MANAGE_TOPICS = "manage_topics"
    MANAGE_BADGES = "manage_badges"
    VIEW_ANALYTICS = "view_analytics"

    VIEW_COURSES = "view_courses"
    VIEW_QUESTIONS = "view_questions"
    VIEW_STUDENTS = "view_students"
    VIEW_REPORTS = "view_reports"

    ANSWER_QUESTIONS = "answer_questions"
    VIEW_PROGRESS = "view_progress"
    VIEW_BADGES = "view_badges"
    VIEW_RANKING = "view_ranking"


_ADMIN_PERMISSIONS = frozenset({
    Permission.MANAGE_ADMINS,
    Permission.MANAGE_COURSES,
    Permission.MANAGE_QUESTIONS,
    Permission.MANAGE_STUDENTS,
    Permission.GENERATE_REPORTS,
    Permission.VIEW_AUDIT_LOGS,
    Permission.MANAGE_GRADES,
    Permission.MANAGE_CONTENT,
    Permission.MANAGE_TOPICS,
    Permission.MANAGE_BADGES,
    Permission.VIEW_ANALYTICS,
})

ROLE_PERMISSIONS: Dict[str, FrozenSet[str]] = {
    "super_admin": _ADMIN_PERMISSIONS,
    "admin": _ADMIN_PERMISSIONS,
    "teacher": frozenset({
        Permission.VIEW_COURSES,
        Permission.VIEW_QUESTIONS,
        Permission.VIEW_STUDENTS,
        Permission.VIEW_REPORTS,
        Permission.VIEW_ANALYTICS,
        Permission.MANAGE_CONTENT,
        Permission.MANAGE_TOPICS,
    }),
    "student": frozenset({
        Permission.VIEW_COURSES,
        Permission.ANSWER_QUESTIONS,
        Permission.VIEW_PROGRESS,
        Permission.VIEW_BADGES,
        Permission.VIEW_RANKING,
    }),
}


def permissions_for(role: str) -> Optional[FrozenSet[str]]:
    """Permission set of a role, or None if the role is unknown."""
    return ROLE_PERMISSIONS.get(role)


def is_known_role(role: str) -> bool:
    return role in ROLE_PERMISSIONS


def has_permissions(role: str, required: Iterable[str]) -> bool:
    """True iff every required permission is granted to the role."""
    granted = permissions_for(role)
    if granted is None:
        return False
    return all(permission in granted for permission in required)
