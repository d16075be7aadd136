"""
Shared Flask extensions and request helpers used by every blueprint.
"""

from typing import Any, Optional, Type, TypeVar

from flask import current_app, request
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from config import config
from errors import ValidationError


# Initialised against the app in create_app()
limiter = Limiter(
    get_remote_address,
    storage_uri=config.RATELIMIT_STORAGE_URI,
    default_limits=[],
)

M = TypeVar('M', bound=BaseModel)


def get_services():
    """The Services container the running app was built with."""
    return current_app.extensions['marketplace']


def validate(model: Type[M], data: Any) -> M:
    """Validate `data` into `model`, turning pydantic errors into a 400 ValidationError."""
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError(
            "Invalid request.",
            details={'errors': e.errors(include_url=False, include_context=False)},
        ) from e


def parse_body(model: Type[M]) -> M:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object.")
    return validate(model, data)


def parse_args(model: Type[M]) -> M:
    return validate(model, request.args.to_dict())


def int_arg(name: str, required: bool = True) -> Optional[int]:
    """Read an integer query parameter such as ?admin_id=3."""
    value = request.args.get(name, '').strip()
    if not value:
        if required:
            raise ValidationError(f"Query parameter '{name}' is required.")
        return None
    try:
        return int(value)
    except ValueError:
        raise ValidationError(f"Query parameter '{name}' must be an integer.")
