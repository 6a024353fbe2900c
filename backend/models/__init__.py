"""Database models package."""
from models.database import Base, get_session, close_db, get_pool_status, get_engine
from models.user import User
from models.customer import Customer
from models.visit_target import VisitTarget
from models.task import Task
from models.sales_submission import SalesSubmission
from models.sales_target import SalesTarget

__all__ = [
    "Base",
    "get_session",
    "close_db",
    "get_pool_status",
    "get_engine",
    "User",
    "Customer",
    "VisitTarget",
    "Task",
    "SalesSubmission",
    "SalesTarget",
]
