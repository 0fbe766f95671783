import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from course_payments.models import Enrollment, EnrollmentStatus, utcnow

logger = structlog.get_logger(__name__)


class EnrollmentHandler:
    """Grants course access once per (user, course), however often it is asked."""

    def _find(self, db: Session, user_id: str, course_id: str):
        return db.scalar(
            select(Enrollment).where(
                Enrollment.user_id == user_id, Enrollment.course_id == course_id
            )
        )

    def ensure_enrollment(self, db: Session, user_id: str, course_id: str, payment_id: str) -> Enrollment:
        """Runs inside the caller's unit of work; never commits."""
        existing = self._find(db, user_id, course_id)
        if existing is not None:
            logger.info(
                "enrollment_exists",
                user_id=user_id,
                course_id=course_id,
                enrollment_id=existing.id,
            )
            return existing

        enrollment = Enrollment(
            user_id=user_id,
            course_id=course_id,
            payment_id=payment_id,
            status=EnrollmentStatus.IN_PROGRESS,
            enrolled_at=utcnow(),
        )
        try:
            with db.begin_nested():
                db.add(enrollment)
        except IntegrityError:
            # a concurrent delivery won the (user_id, course_id) constraint
            logger.info("enrollment_race_lost", user_id=user_id, course_id=course_id)
            return self._find(db, user_id, course_id)

        logger.info(
            "enrollment_created",
            user_id=user_id,
            course_id=course_id,
            payment_id=payment_id,
            enrollment_id=enrollment.id,
        )
        return enrollment
