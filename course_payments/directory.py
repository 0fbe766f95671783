"""Lookups into user and course data owned by other subsystems."""

from typing import Optional, Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session

from course_payments.models import Course, User


class Directory(Protocol):
    def get_user_email(self, db: Session, user_id: str) -> Optional[str]:
        ...

    def course_exists(self, db: Session, course_id: str) -> bool:
        ...


class SqlDirectory:
    """Reads the shared users and courses tables."""

    def get_user_email(self, db: Session, user_id: str) -> Optional[str]:
        return db.scalar(select(User.email).where(User.id == user_id))

    def course_exists(self, db: Session, course_id: str) -> bool:
        found = db.scalar(
            select(Course.id).where(Course.id == course_id, Course.is_published.is_(True))
        )
        return found is not None
