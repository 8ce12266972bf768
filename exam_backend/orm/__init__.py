"""
exam_backend/orm
Importing this package registers every model on Base.metadata.
"""
from exam_backend.orm.base import Base, BaseModel
from exam_backend.orm.user import User, UserRole, LoginLog, ADMIN_ROLES
from exam_backend.orm.student import Student, Group, ExamSchedule, group_students
from exam_backend.orm.question import Question, QuestionType
from exam_backend.orm.exam import Exam, ExamQuestion, ExamTemplate, TemplateQuestion
from exam_backend.orm.exam_session import ExamSession, ExamSessionStatus, LIVE_STATUSES, FINISHED_STATUSES
from exam_backend.orm.exam_answer import ExamAnswer, AnswerReview, GradeAppeal, AppealStatus
from exam_backend.orm.audit_log import AuditLog
from exam_backend.orm.monitoring import MonitoringSession, MonitoringScreenshot

__all__ = [
    "Base", "BaseModel",
    "User", "UserRole", "LoginLog", "ADMIN_ROLES",
    "Student", "Group", "ExamSchedule", "group_students",
    "Question", "QuestionType",
    "Exam", "ExamQuestion", "ExamTemplate", "TemplateQuestion",
    "ExamSession", "ExamSessionStatus", "LIVE_STATUSES", "FINISHED_STATUSES",
    "ExamAnswer", "AnswerReview", "GradeAppeal", "AppealStatus",
    "AuditLog",
    "MonitoringSession", "MonitoringScreenshot",
]
