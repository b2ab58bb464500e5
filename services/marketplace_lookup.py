"""Read-only lookups of marketplace collaborators (users, submissions) with ownership checks"""

import logging
from typing import Optional

from sqlalchemy.orm import Session

from models import User, UserType, Submission, Program
from utils.exceptions import NotFound, NotAuthorized

logger = logging.getLogger(__name__)


def require_user(session: Session, user_id: int, user_type: Optional[UserType] = None) -> User:
    user = session.get(User, user_id)
    if user is None or not user.is_active:
        raise NotFound("User not found")
    if user_type is not None and user.user_type != user_type.value:
        logger.warning(f"🚫 USER_TYPE_MISMATCH: user={user_id} is {user.user_type}, expected {user_type.value}")
        raise NotAuthorized(f"Operation requires a {user_type.value} account")
    return user


def require_submission(session: Session, submission_id: int) -> Submission:
    submission = session.get(Submission, submission_id)
    if submission is None:
        raise NotFound("Submission not found")
    return submission


def submission_company_id(session: Session, submission: Submission) -> int:
    program = submission.program or session.get(Program, submission.program_id)
    if program is None:
        raise NotFound("Program not found")
    return program.company_id
