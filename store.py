import logging
import threading
from typing import Mapping, Optional, Union

from pydantic import ValidationError

from errors import (
    ExpenseTrackerError,
    InvalidInput,
    Unauthenticated,
    classify_database_error,
)
from realtime import DatabaseError, RealtimeDatabase, expenses_path
from schemas import ExpenseFormInput, now_ms

logger = logging.getLogger(__name__)


def validate_form(data: Union[ExpenseFormInput, Mapping]) -> ExpenseFormInput:
    if isinstance(data, ExpenseFormInput):
        return data
    try:
        return ExpenseFormInput.model_validate(dict(data))
    except ValidationError as exc:
        message = exc.errors()[0]["msg"]
        raise InvalidInput(message.removeprefix("Value error, "))


class ExpenseStore:
    """
    Writes to the user's expense collection. It never touches feed state:
    the store pushes the resulting snapshot to subscribers itself.
    """

    def __init__(self, database: RealtimeDatabase):
        self._database = database
        self._lock = threading.Lock()
        self._errors: dict[str, str] = {}

    def last_error(self, user_id: Optional[str]) -> Optional[str]:
        with self._lock:
            return self._errors.get(user_id or "")

    def clear_error(self, user_id: Optional[str]):
        self._set_error(user_id, None)

    def _set_error(self, user_id: Optional[str], message: Optional[str]):
        with self._lock:
            if message is None:
                self._errors.pop(user_id or "", None)
            else:
                self._errors[user_id or ""] = message

    def _fail(self, user_id: Optional[str], error: ExpenseTrackerError):
        self._set_error(user_id, error.message)
        raise error

    def create_expense(
        self, user_id: Optional[str], data: Union[ExpenseFormInput, Mapping]
    ) -> str:
        if not user_id:
            self._fail(user_id, Unauthenticated("Must be logged in to add expenses"))
        self.clear_error(user_id)

        try:
            form = validate_form(data)
        except InvalidInput as exc:
            self._fail(user_id, exc)

        record = form.model_dump(exclude_none=True)
        record.update(createdAt=now_ms(), userId=user_id)

        try:
            key = self._database.push(
                expenses_path(user_id), record, auth_uid=user_id
            )
        except DatabaseError as exc:
            logger.error("Failed to add expense for %s: %s", user_id, exc)
            self._fail(user_id, classify_database_error(exc))

        logger.info("Expense added successfully: %s", key)
        return key

    def delete_expense(self, user_id: Optional[str], expense_id: str):
        if not user_id:
            self._fail(
                user_id, Unauthenticated("Must be logged in to delete expenses")
            )
        self.clear_error(user_id)

        try:
            removed = self._database.remove(
                expenses_path(user_id, expense_id), auth_uid=user_id
            )
        except DatabaseError as exc:
            logger.error("Failed to delete expense %s: %s", expense_id, exc)
            self._fail(user_id, classify_database_error(exc))

        if removed:
            logger.info("Expense deleted successfully: %s", expense_id)
        else:
            logger.info("Expense %s not found, nothing to delete", expense_id)
