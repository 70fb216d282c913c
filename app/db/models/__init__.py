from app.db.base import Base
from .user import User
from .school import SchoolYear, SchoolClass, Student, Enrollment
from .gradebook import GradebookTemplate, TemplateAssignment
from .scopes import TeacherClassAssignment, SubAdminAssignment, RoleScope
from .simulation_run import SimulationRun, SimulationRunAction

__all__ = [
    "Base",
    "User",
    "SchoolYear",
    "SchoolClass",
    "Student",
    "Enrollment",
    "GradebookTemplate",
    "TemplateAssignment",
    "TeacherClassAssignment",
    "SubAdminAssignment",
    "RoleScope",
    "SimulationRun",
    "SimulationRunAction",
]
