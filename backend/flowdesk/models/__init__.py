"""Database models for the Flowdesk backend."""

from .audit import AuditLog
from .form import Form, FormSubmission
from .instance import WorkflowInstance
from .task import Task
from .user import User
from .workflow import Workflow

__all__ = ["AuditLog", "Form", "FormSubmission", "Task", "User", "Workflow", "WorkflowInstance"]
