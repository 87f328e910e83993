"""Service layer package for encapsulating business logic."""

from .errors import (  # noqa: F401
    BorrowServiceError,
    Conflict,
    Forbidden,
    NotFound,
    StoreFailure,
    Unauthorized,
    ValidationError,
)
from .catalog import CatalogService  # noqa: F401
from .borrowing import BorrowLedger  # noqa: F401
from .auth import IdentityService, current_user_id, issue_token  # noqa: F401
