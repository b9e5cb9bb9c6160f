import pytest

from app.core.exceptions import (
    AccessDeniedError,
    DirectoryUnavailableError,
    FileShareError,
    InvalidTransitionError,
    NotFoundError,
    RetryExhaustedError,
    TransientError,
    ValidationError,
)


class TestErrorBodies:
    @pytest.mark.parametrize("error_class, status_code, error_code", [
        (ValidationError, 400, "VALIDATION_ERROR"),
        (NotFoundError, 404, "NOT_FOUND"),
        (AccessDeniedError, 403, "ACCESS_DENIED"),
        (RetryExhaustedError, 409, "RETRY_EXHAUSTED"),
        (DirectoryUnavailableError, 503, "DIRECTORY_UNAVAILABLE"),
    ])
    def test_status_and_code(self, error_class, status_code, error_code):
        error = error_class("boom")

        assert error.status_code == status_code
        assert error.to_dict() == {"detail": "boom", "error_code": error_code}

    def test_context_is_included_when_present(self):
        error = RetryExhaustedError("Maximum retry attempts exceeded", {"delivery_id": "d1"})

        assert error.to_dict()["context"] == {"delivery_id": "d1"}

    def test_invalid_transition_names_both_states(self):
        error = InvalidTransitionError("delivery_1", "pending", "viewed")

        assert error.status_code == 409
        assert "from 'pending' to 'viewed'" in error.message
        assert error.to_dict()["context"]["target_status"] == "viewed"

    def test_hierarchy(self):
        assert issubclass(DirectoryUnavailableError, TransientError)
        assert issubclass(TransientError, FileShareError)
