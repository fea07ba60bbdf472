from __future__ import annotations

from typing import Any, Protocol

from sqlalchemy.orm import Session

from applyflow.db.repositories import Repository


class CVStore(Protocol):
    def get_cv(self, user_id: str, cv_id: int) -> dict[str, Any] | None:
        """Return the parsed CV content, or None when missing or not yet parsed."""


class DatabaseCVStore:
    def __init__(self, session: Session):
        self.repo = Repository(session)

    def get_cv(self, user_id: str, cv_id: int) -> dict[str, Any] | None:
        cv = self.repo.get_cv(cv_id)
        if cv is None or cv.user_id != user_id:
            return None
        return cv.parsed_data or None
